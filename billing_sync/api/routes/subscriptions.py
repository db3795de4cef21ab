"""
Subscription API Routes

REST API endpoints for the caller's subscription: current state, the
post-checkout verification poller, the reconciliation diagnostic and
self-service cancellation.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from billing_sync.api.dependencies import (
    CancellationServiceDep,
    CurrentIdentityDep,
    ReconciliationServiceDep,
    ScopedSubscriptionRepoDep,
    get_plan_catalog,
)
from billing_sync.config.plans import PlanCatalog
from billing_sync.domain.subscription import (
    CancelSubscriptionRequest,
    CancelSubscriptionResponse,
    CheckoutVerification,
    CurrentSubscriptionResponse,
    ReconciliationResult,
    to_response,
)


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/subscription", response_model=CurrentSubscriptionResponse)
async def get_current_subscription(
    identity: CurrentIdentityDep,
    repo: ScopedSubscriptionRepoDep,
    plans: PlanCatalog = Depends(get_plan_catalog),
):
    """
    Get the caller's active subscription and plan limits.

    Callers without an active subscription get the free limits.
    """
    subscription = await repo.find_active_by_user(identity.user_id)

    if subscription is None:
        limits = plans.limits_for(None)
        return CurrentSubscriptionResponse(
            max_funnels=limits.max_funnels,
            max_leads=limits.max_leads,
        )

    limits = plans.limits_for(subscription.plan_id)
    return CurrentSubscriptionResponse(
        subscription=to_response(subscription),
        plan_id=subscription.plan_id or "free",
        max_funnels=limits.max_funnels,
        max_leads=limits.max_leads,
    )


@router.get("/verify-session/{session_id}", response_model=CheckoutVerification)
async def verify_checkout_session(
    session_id: str,
    identity: CurrentIdentityDep,
    service: ReconciliationServiceDep,
):
    """
    Confirm a completed checkout after the redirect back from Stripe.

    Waits briefly for the checkout webhook, then syncs from Stripe directly.
    """
    result = await service.verify_checkout_session(session_id, identity.user_id)
    if not result.success:
        logger.info(f"Checkout verification for {session_id} unsuccessful: {result.error}")
    return result


@router.get("/subscription/diagnostic", response_model=ReconciliationResult)
async def diagnose_subscription(
    identity: CurrentIdentityDep,
    repo: ScopedSubscriptionRepoDep,
    service: ReconciliationServiceDep,
    subscription_id: Optional[str] = Query(default=None, description="Stripe subscription id"),
    user_id: Optional[str] = Query(default=None, description="Admins only: diagnose this user"),
    auto_correct: bool = Query(default=True),
):
    """
    Compare the local subscription with Stripe and repair drift.

    Without parameters, diagnoses the caller's most recent subscription.
    """
    if user_id and user_id != identity.user_id and not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )

    if subscription_id and not identity.is_admin:
        owned = await repo.find_by_external_id(subscription_id)
        if owned is None or owned.user_id != identity.user_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Subscription not found",
            )

    return await service.diagnose(
        user_id=user_id or identity.user_id,
        external_subscription_id=subscription_id,
        auto_correct=auto_correct,
    )


@router.post("/cancel-subscription", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    identity: CurrentIdentityDep,
    service: CancellationServiceDep,
    request: Optional[CancelSubscriptionRequest] = None,
):
    """
    Cancel the caller's active subscription.

    The local record is canceled even if Stripe is unreachable; the caller
    only sees success.
    """
    at_period_end = request.at_period_end if request else False
    report = await service.cancel_for_user(identity.user_id, at_period_end=at_period_end)

    if report.outcome == "scheduled":
        message = "Subscription will be canceled at the end of the current period"
    else:
        message = "Subscription canceled"
    return CancelSubscriptionResponse(
        message=message,
        external_subscription_id=report.external_subscription_id,
    )
