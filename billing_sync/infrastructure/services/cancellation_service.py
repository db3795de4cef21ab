"""
Cancellation Enforcer

Escalating, self-verifying write path that marks a subscription canceled.
Used by the subscription.deleted webhook, self-service cancellation, admin
cancellation and the diagnostic auto-repair.

Tiers:
1. privileged UPDATE keyed by provider subscription id
2. locate the row, then UPDATE by primary key
3. raw UPDATE statement through the privileged connection

Whatever tier claims success, the row is re-read and only counted as
canceled when the status actually says so. Failures never propagate: an
unconfirmed cancellation shows up in the next diagnostic run instead.
"""

import logging
from typing import Optional

from billing_sync.domain.subscription import (
    CancellationReport,
    SubscriptionStatus,
    SubscriptionWrite,
)
from billing_sync.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from billing_sync.infrastructure.exceptions import (
    BillingSyncError,
    ConfigurationError,
    NotFoundError,
    ValidationError,
)
from billing_sync.infrastructure.payments.stripe_service import (
    NotFound,
    StripeService,
    TransientError,
)


logger = logging.getLogger(__name__)


class CancellationEnforcer:
    """Marks subscriptions canceled, escalating through three write tiers."""

    def __init__(self, repository: SubscriptionRepository):
        if not repository.privileged:
            raise ConfigurationError(
                "CancellationEnforcer requires a repository on the privileged datastore client"
            )
        self._repo = repository

    async def enforce(
        self,
        external_subscription_id: str,
        reason: str = "unspecified",
    ) -> CancellationReport:
        """
        Cancel the local row for `external_subscription_id`.

        Does not look at the current status first, so a deletion always wins
        over a stale update that lands later. Running it on an already
        canceled row succeeds without changing the status; Tier 1 still
        rewrites the row, so `updated_at` moves forward.
        """
        report = CancellationReport(
            external_subscription_id=external_subscription_id,
            outcome="unresolved",
        )
        logger.info(f"Cancelling subscription {external_subscription_id} (reason: {reason})")

        tier = await self._tier_one(external_subscription_id, report)
        if tier is None:
            tier = await self._tier_two_and_three(external_subscription_id, report)
            if report.outcome == "not_found":
                return report

        if tier is None:
            logger.error(
                f"Cancellation of {external_subscription_id} unresolved after all tiers: "
                f"{'; '.join(report.errors)}"
            )
            return report

        report.tier = tier
        await self._verify(external_subscription_id, report)
        return report

    async def _tier_one(
        self,
        external_subscription_id: str,
        report: CancellationReport,
    ) -> Optional[int]:
        try:
            affected = await self._repo.mark_canceled_by_external_id(external_subscription_id)
        except BillingSyncError as e:
            logger.warning(f"Tier 1 cancel failed for {external_subscription_id}: {e.message}")
            report.errors.append(f"tier1: {e.message}")
            return None

        if affected == 0:
            logger.warning(f"Tier 1 cancel matched no rows for {external_subscription_id}")
            report.errors.append("tier1: no rows affected")
            return None

        return 1

    async def _tier_two_and_three(
        self,
        external_subscription_id: str,
        report: CancellationReport,
    ) -> Optional[int]:
        try:
            row = await self._repo.find_by_external_id(external_subscription_id)
        except BillingSyncError as e:
            logger.warning(f"Tier 2 lookup failed for {external_subscription_id}: {e.message}")
            report.errors.append(f"tier2 lookup: {e.message}")
            return None

        if row is None:
            logger.info(f"No local subscription {external_subscription_id}; nothing to cancel")
            report.outcome = "not_found"
            return None

        try:
            affected = await self._repo.mark_canceled_by_id(row.id)
            if affected > 0:
                return 2
            report.errors.append("tier2: no rows affected")
            return None
        except BillingSyncError as e:
            logger.warning(f"Tier 2 cancel failed for row {row.id}: {e.message}")
            report.errors.append(f"tier2: {e.message}")

        try:
            affected = await self._repo.mark_canceled_raw(row.id)
        except BillingSyncError as e:
            logger.error(f"Tier 3 cancel failed for row {row.id}: {e.message}")
            report.errors.append(f"tier3: {e.message}")
            return None

        if affected == 0:
            report.errors.append("tier3: no rows affected")
            return None
        return 3

    async def _verify(self, external_subscription_id: str, report: CancellationReport) -> None:
        try:
            row = await self._repo.find_by_external_id(external_subscription_id)
        except BillingSyncError as e:
            logger.warning(f"Could not verify cancellation of {external_subscription_id}: {e.message}")
            report.errors.append(f"verify: {e.message}")
            return

        if row is not None and row.status == SubscriptionStatus.CANCELED:
            report.verified = True
            report.outcome = "canceled"
            logger.info(
                f"Subscription {external_subscription_id} canceled (tier {report.tier}, verified)"
            )
        else:
            status = row.status.value if row else "missing"
            logger.warning(
                f"Cancellation of {external_subscription_id} not confirmed "
                f"(tier {report.tier} claimed success, status={status})"
            )


class SubscriptionCancellationService:
    """
    Self-service and administrative cancellation.

    Both paths end in the same enforcer used by the deletion webhook.
    """

    def __init__(
        self,
        repository: SubscriptionRepository,
        enforcer: CancellationEnforcer,
        provider: Optional[StripeService] = None,
    ):
        self._repo = repository
        self._enforcer = enforcer
        self._provider = provider

    async def cancel_for_user(self, user_id: str, at_period_end: bool = False) -> CancellationReport:
        """
        Cancel the caller's active subscription.

        Immediate cancellation cancels upstream, then enforces locally; the
        local write happens even when the provider call fails. With
        `at_period_end`, only the cancel flag is set on both sides and the
        deletion webhook finishes the job at period end.

        Raises:
            NotFoundError: if the user has no active subscription
        """
        subscription = await self._repo.find_active_by_user(user_id)
        if subscription is None:
            raise NotFoundError("No active subscription found", operation="cancel", table="subscriptions")

        external_id = subscription.external_subscription_id

        if at_period_end:
            await self._request_upstream(external_id, at_period_end=True)
            await self._repo.upsert(
                SubscriptionWrite(external_subscription_id=external_id, cancel_at_period_end=True)
            )
            logger.info(f"Subscription {external_id} set to cancel at period end for user {user_id}")
            return CancellationReport(
                external_subscription_id=external_id,
                outcome="scheduled",
                verified=True,
            )

        await self._request_upstream(external_id, at_period_end=False)
        return await self._enforcer.enforce(external_id, reason=f"self-service by user {user_id}")

    async def cancel_by_admin(
        self,
        external_subscription_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> list[CancellationReport]:
        """
        Local-only cancellation by subscription id or by owner.

        For repairing rows whose upstream subscription is already gone.
        """
        if external_subscription_id:
            return [await self._enforcer.enforce(external_subscription_id, reason="admin")]

        if not user_id:
            raise ValidationError("Either subscription_id or user_id is required")

        open_subscriptions = await self._repo.find_open_by_user(user_id)
        if not open_subscriptions:
            raise NotFoundError(
                f"No open subscriptions for user {user_id}",
                operation="cancel",
                table="subscriptions",
            )

        reports = []
        for subscription in open_subscriptions:
            reports.append(
                await self._enforcer.enforce(
                    subscription.external_subscription_id,
                    reason=f"admin (user {user_id})",
                )
            )
        return reports

    async def _request_upstream(self, external_subscription_id: str, at_period_end: bool) -> None:
        if self._provider is None:
            return

        if at_period_end:
            result = await self._provider.update_subscription(
                external_subscription_id, {"cancel_at_period_end": True}
            )
        else:
            result = await self._provider.cancel_subscription(external_subscription_id)

        if isinstance(result, TransientError):
            logger.error(
                f"Provider cancellation of {external_subscription_id} failed, "
                f"continuing locally: {result.message}"
            )
        elif isinstance(result, NotFound):
            logger.info(f"Subscription {external_subscription_id} already gone upstream")
