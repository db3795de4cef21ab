"""
Reconciliation Service

On-demand diagnostic that compares a local subscription with the provider
and optionally repairs drift, plus the post-checkout verification poller.

The provider is the source of truth. A subscription the provider no longer
knows is canceled locally through the cancellation enforcer; any other
mismatch is repaired through the same upsert the webhook handlers use.
"""

import logging
from typing import Optional

from billing_sync.config.settings import get_settings
from billing_sync.domain.provider_events import CheckoutSession, parse_provider_object
from billing_sync.domain.retry import RetryPolicy
from billing_sync.domain.subscription import (
    CheckoutVerification,
    FieldMismatch,
    ReconciliationAction,
    ReconciliationResult,
    Subscription,
    SubscriptionStatus,
    map_provider_status,
    to_response,
)
from billing_sync.domain.timestamps import normalize_period, within_tolerance
from billing_sync.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from billing_sync.infrastructure.exceptions import (
    ForbiddenError,
    MalformedProviderData,
    ProviderUnreachable,
    ValidationError,
)
from billing_sync.infrastructure.payments.stripe_service import (
    Found,
    NotFound,
    StripeService,
    TransientError,
)
from billing_sync.infrastructure.services.cancellation_service import CancellationEnforcer
from billing_sync.infrastructure.services.event_handlers import SubscriptionEventHandlers


logger = logging.getLogger(__name__)

# Provider statuses that grant access right after checkout.
_ACCESS_STATUSES = frozenset({"active", "trialing"})


def poll_policy_from_settings() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.checkout_poll_attempts,
        delay_seconds=settings.checkout_poll_delay_seconds,
        backoff=settings.checkout_poll_backoff,
        deadline_seconds=settings.checkout_poll_deadline_seconds,
    )


class ReconciliationService:
    """Diagnostic and checkout verification over the privileged repository."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        provider: StripeService,
        enforcer: CancellationEnforcer,
        handlers: SubscriptionEventHandlers,
        drift_tolerance_seconds: Optional[int] = None,
        poll_policy: Optional[RetryPolicy] = None,
    ):
        self._repo = repository
        self._provider = provider
        self._enforcer = enforcer
        self._handlers = handlers
        self._tolerance = (
            drift_tolerance_seconds
            if drift_tolerance_seconds is not None
            else get_settings().drift_tolerance_seconds
        )
        self._poll_policy = poll_policy or poll_policy_from_settings()

    # =========================================================================
    # Diagnostic
    # =========================================================================

    async def diagnose(
        self,
        user_id: Optional[str] = None,
        external_subscription_id: Optional[str] = None,
        auto_correct: bool = True,
    ) -> ReconciliationResult:
        """
        Compare local and provider state for one subscription.

        Looks the subscription up by provider id when given, otherwise takes
        the user's most recently updated row. Provider outages never raise;
        they are reported as flagged.
        """
        if external_subscription_id:
            local = await self._repo.find_by_external_id(external_subscription_id)
        elif user_id:
            local = await self._repo.find_latest_by_user(user_id)
        else:
            raise ValidationError("Either subscription_id or user_id is required")

        if local is None:
            return ReconciliationResult(
                external_subscription_id=external_subscription_id,
                action=ReconciliationAction.FLAGGED,
                note="no local record",
            )

        external_id = local.external_subscription_id
        result = ReconciliationResult(
            external_subscription_id=external_id,
            local_status=local.status,
        )

        try:
            live = await self._handlers.fetch_live_subscription(external_id)
        except ProviderUnreachable as e:
            logger.warning(f"Diagnostic for {external_id} could not reach provider: {e.message}")
            result.action = ReconciliationAction.FLAGGED
            result.note = f"Provider unreachable: {e.message}"
            return result
        except MalformedProviderData as e:
            result.action = ReconciliationAction.FLAGGED
            result.note = e.message
            return result

        if live is None:
            return await self._reconcile_missing(local, result, auto_correct)

        result.external_status = live.status
        start, end = normalize_period(live.period_start, live.period_end, live.is_annual)
        expected_status = map_provider_status(live.status)

        if local.status != expected_status:
            result.mismatches.append(FieldMismatch(
                field="status",
                local_value=local.status.value,
                external_value=live.status,
            ))
        for field, external_value in (("current_period_start", start), ("current_period_end", end)):
            local_value = getattr(local, field)
            if not within_tolerance(local_value, external_value, self._tolerance):
                result.timestamp_drift = True
                result.mismatches.append(FieldMismatch(
                    field=field,
                    local_value=local_value,
                    external_value=external_value,
                ))

        if not result.mismatches:
            result.note = "In sync"
            return result

        logger.info(
            f"Drift on {external_id}: {[m.field for m in result.mismatches]} "
            f"(auto_correct={auto_correct})"
        )
        if not auto_correct:
            result.action = ReconciliationAction.FLAGGED
            return result

        await self._handlers.apply_subscription(live)
        result.action = ReconciliationAction.CORRECTED
        result.note = "Local record updated from provider"
        return result

    async def _reconcile_missing(
        self,
        local: Subscription,
        result: ReconciliationResult,
        auto_correct: bool,
    ) -> ReconciliationResult:
        result.external_status = "not_found"

        if local.status == SubscriptionStatus.CANCELED:
            result.note = "Already canceled; provider no longer has it"
            return result

        result.mismatches.append(FieldMismatch(
            field="status",
            local_value=local.status.value,
            external_value="not_found",
        ))
        if not auto_correct:
            result.action = ReconciliationAction.FLAGGED
            result.note = "Provider no longer has this subscription"
            return result

        report = await self._enforcer.enforce(
            local.external_subscription_id,
            reason="diagnostic: not found upstream",
        )
        if report.verified:
            result.action = ReconciliationAction.CORRECTED
            result.note = "Canceled locally: provider no longer has this subscription"
        else:
            result.action = ReconciliationAction.FLAGGED
            result.note = f"Local cancellation not confirmed ({report.outcome})"
        return result

    # =========================================================================
    # Post-checkout verification
    # =========================================================================

    async def verify_checkout_session(self, session_id: str, user_id: str) -> CheckoutVerification:
        """
        Confirm that a completed checkout produced a local subscription.

        Polls the store while the checkout webhook is expected to land, then
        falls back to fetching the subscription and writing it directly.

        Raises:
            ForbiddenError: unless the session metadata names the caller as owner
            ProviderUnreachable: if the provider cannot be reached
        """
        result = await self._provider.retrieve_checkout_session(session_id)
        if isinstance(result, NotFound):
            return CheckoutVerification(success=False, error="Checkout session not found")
        if isinstance(result, TransientError):
            raise ProviderUnreachable(
                f"Could not retrieve checkout session: {result.message}",
                operation="retrieve_checkout_session",
            )
        if not isinstance(result, Found):
            raise TypeError(f"Unexpected provider result {result!r}")

        session = parse_provider_object(CheckoutSession, result.value, "checkout.session")

        if session.user_id != user_id:
            raise ForbiddenError("Checkout session does not belong to this user")
        if session.status and session.status != "complete":
            return CheckoutVerification(success=False, error=f"Checkout not complete ({session.status})")
        if not session.subscription:
            return CheckoutVerification(success=False, error="No subscription on checkout session")

        external_id = session.subscription
        local = await self._poll_policy.run(
            lambda: self._repo.find_by_external_id(external_id),
            is_done=lambda found: found is not None,
            operation_name=f"verify_checkout({session_id})",
        )
        if local is not None:
            return CheckoutVerification(
                success=True,
                plan_id=local.plan_id,
                subscription=to_response(local),
            )

        logger.info(f"Webhook for {external_id} not seen yet, syncing from provider")
        live = await self._handlers.fetch_live_subscription(external_id)
        if live is None:
            return CheckoutVerification(success=False, error="Subscription not found")
        if live.status not in _ACCESS_STATUSES:
            return CheckoutVerification(success=False, error=f"Subscription not active ({live.status})")

        stored = await self._handlers.apply_subscription(
            live,
            user_id=session.user_id,
            plan_id=session.plan_id,
        )
        return CheckoutVerification(
            success=True,
            plan_id=stored.plan_id,
            subscription=to_response(stored),
        )
