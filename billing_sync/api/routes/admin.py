"""
Admin Routes for Subscription Maintenance

Manual cancellation of local subscription records. Protected by the admin
role (JWT app_metadata.role or ADMIN_USER_IDS).
"""

import logging

from fastapi import APIRouter, Depends

from billing_sync.api.dependencies import AdminIdentityDep, CancellationServiceDep, require_admin
from billing_sync.domain.subscription import AdminCancelRequest, AdminCancelResponse


logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],  # Protect ALL admin routes
)


@router.post("/cancel-subscription", response_model=AdminCancelResponse)
async def admin_cancel_subscription(
    request: AdminCancelRequest,
    identity: AdminIdentityDep,
    service: CancellationServiceDep,
):
    """
    Cancel subscriptions in the local database.

    Accepts either a Stripe subscription id or a user id (cancels all of
    that user's non-canceled subscriptions). Stripe is not contacted.
    """
    logger.info(
        f"Admin {identity.user_id} cancelling "
        f"subscription_id={request.subscription_id} user_id={request.user_id}"
    )

    reports = await service.cancel_by_admin(
        external_subscription_id=request.subscription_id,
        user_id=request.user_id,
    )

    verified = [report for report in reports if report.verified]
    not_found = [report for report in reports if report.outcome == "not_found"]
    success = len(verified) == len(reports)

    if success:
        message = f"Canceled {len(verified)} subscription(s)"
    elif not_found and len(not_found) == len(reports):
        message = "No matching subscription found"
    else:
        message = f"Canceled {len(verified)} of {len(reports)} subscription(s); see results"

    return AdminCancelResponse(success=success, message=message, results=reports)
