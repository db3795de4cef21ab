"""
Stripe Event Handlers and Dispatcher

Each handler derives the target subscription state and writes it through the
repository's idempotent upsert. Handlers for checkout and invoice events
re-fetch the live subscription so that out-of-order deliveries converge on
the provider's current state; subscription.updated trusts its payload because
Stripe always embeds the full object.

Critical Events:
- checkout.session.completed: create/attach the subscription after payment
- invoice.paid: extend the period after a renewal charge
- customer.subscription.updated: sync status, period and cancel flag
- customer.subscription.deleted: cancellation enforcer
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from billing_sync.config.plans import PlanCatalog
from billing_sync.domain.provider_events import (
    CHECKOUT_SESSION_COMPLETED,
    INVOICE_PAID,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    CheckoutSession,
    Invoice,
    ProviderSubscription,
    VerifiedEvent,
    parse_provider_object,
)
from billing_sync.domain.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionWrite,
    map_provider_status,
)
from billing_sync.domain.timestamps import normalize_period
from billing_sync.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from billing_sync.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
)
from billing_sync.infrastructure.exceptions import (
    BillingSyncError,
    DatabaseError,
    ProviderUnreachable,
)
from billing_sync.infrastructure.payments.stripe_service import (
    Found,
    NotFound,
    StripeService,
    TransientError,
)
from billing_sync.infrastructure.services.cancellation_service import CancellationEnforcer


logger = logging.getLogger(__name__)


def build_subscription_write(
    subscription: ProviderSubscription,
    plan_catalog: Optional[PlanCatalog] = None,
    user_id: Optional[str] = None,
    plan_id: Optional[str] = None,
) -> SubscriptionWrite:
    """
    Map a live provider subscription onto a partial local record.

    Period boundaries go through the normalizer; trialing becomes active.
    Ownership and plan are only written when known.
    """
    start, end = normalize_period(
        subscription.period_start,
        subscription.period_end,
        subscription.is_annual,
    )

    values: dict[str, Any] = {
        "external_subscription_id": subscription.id,
        "status": map_provider_status(subscription.status),
        "current_period_start": start,
        "current_period_end": end,
        "cancel_at_period_end": subscription.cancel_at_period_end,
    }
    if subscription.customer:
        values["external_customer_id"] = subscription.customer

    owner = user_id or subscription.metadata.get("userId") or subscription.metadata.get("user_id")
    if owner:
        values["user_id"] = owner

    plan = plan_id or subscription.metadata.get("planId") or subscription.metadata.get("plan_id")
    if not plan and plan_catalog is not None:
        for price_id in subscription.price_ids:
            matched = plan_catalog.plan_for_price(price_id)
            if matched:
                plan = matched.id
                break
    if plan:
        values["plan_id"] = plan

    return SubscriptionWrite(**values)


class SubscriptionEventHandlers:
    """The four recognized event handlers plus the shared apply path."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        provider: StripeService,
        enforcer: CancellationEnforcer,
        plan_catalog: Optional[PlanCatalog] = None,
    ):
        self._repo = repository
        self._provider = provider
        self._enforcer = enforcer
        self._plans = plan_catalog

    async def fetch_live_subscription(self, subscription_id: str) -> Optional[ProviderSubscription]:
        """
        Fetch the provider's current subscription.

        Returns:
            ProviderSubscription, or None when the provider no longer has it

        Raises:
            ProviderUnreachable: on timeout or API failure (webhook gets redelivered)
            MalformedProviderData: if the response does not fit the schema
        """
        result = await self._provider.retrieve_subscription(subscription_id)
        if isinstance(result, Found):
            return parse_provider_object(ProviderSubscription, result.value, "subscription")
        if isinstance(result, NotFound):
            return None
        if isinstance(result, TransientError):
            raise ProviderUnreachable(
                f"Could not retrieve subscription {subscription_id}: {result.message}",
                operation="retrieve_subscription",
            )
        raise TypeError(f"Unexpected provider result {result!r}")

    async def apply_subscription(
        self,
        subscription: ProviderSubscription,
        user_id: Optional[str] = None,
        plan_id: Optional[str] = None,
    ) -> Subscription:
        """Normalize and upsert a provider subscription. Shared by every write path."""
        write = build_subscription_write(subscription, self._plans, user_id, plan_id)
        return await self._repo.upsert(write)

    async def _apply_live(
        self,
        subscription_id: str,
        user_id: Optional[str] = None,
        plan_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        live = await self.fetch_live_subscription(subscription_id)
        if live is None:
            logger.warning(f"Subscription {subscription_id} no longer exists upstream; cancelling locally")
            await self._enforcer.enforce(subscription_id, reason="not found upstream")
            return None
        return await self.apply_subscription(live, user_id=user_id, plan_id=plan_id)

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def handle_checkout_completed(self, payload: dict[str, Any]) -> None:
        """
        Handle successful checkout session completion.

        Attaches user and plan (from session metadata) to the live subscription.
        """
        session = parse_provider_object(CheckoutSession, payload, "checkout.session")

        if not session.subscription or not session.customer:
            logger.info(f"Checkout session {session.id} has no subscription/customer, ignoring")
            return
        if not session.user_id or not session.plan_id:
            logger.warning(
                f"Checkout session {session.id} missing userId/planId metadata: {session.metadata}"
            )
            return

        subscription = await self._apply_live(
            session.subscription,
            user_id=session.user_id,
            plan_id=session.plan_id,
        )
        if subscription:
            logger.info(
                f"Checkout completed: subscription {subscription.external_subscription_id} "
                f"for user {subscription.user_id}, plan {subscription.plan_id}, "
                f"status {subscription.status.value}"
            )

    async def handle_invoice_paid(self, payload: dict[str, Any]) -> None:
        """
        Handle a paid invoice.

        Extends the billing period from the live subscription.
        """
        invoice = parse_provider_object(Invoice, payload, "invoice")
        subscription_id = invoice.subscription_id

        if not subscription_id:
            logger.info(f"Invoice {invoice.id} has no subscription, ignoring")
            return

        subscription = await self._apply_live(subscription_id)
        if subscription:
            logger.info(
                f"Invoice paid: subscription {subscription_id} period now "
                f"{subscription.current_period_start}..{subscription.current_period_end}"
            )

    async def handle_subscription_updated(self, payload: dict[str, Any]) -> None:
        """
        Sync status, period and cancel flag from the embedded subscription object.

        Canceled is terminal: an update that would move a canceled row back to
        another status is a stale delivery and is skipped.
        """
        subscription = parse_provider_object(ProviderSubscription, payload, "subscription")

        existing = await self._repo.find_by_external_id(subscription.id)
        incoming_status = map_provider_status(subscription.status)
        if (
            existing is not None
            and existing.status == SubscriptionStatus.CANCELED
            and incoming_status != SubscriptionStatus.CANCELED
        ):
            logger.warning(
                f"Ignoring stale update for canceled subscription {subscription.id} "
                f"(incoming status={incoming_status.value})"
            )
            return

        stored = await self.apply_subscription(subscription)
        logger.info(
            f"Subscription {stored.external_subscription_id} synced "
            f"(status={stored.status.value}, cancel_at_period_end={stored.cancel_at_period_end})"
        )

    async def handle_subscription_deleted(self, payload: dict[str, Any]) -> None:
        """Delegate entirely to the cancellation enforcer."""
        subscription_id = payload.get("id")
        if not subscription_id or not isinstance(subscription_id, str):
            parse_provider_object(ProviderSubscription, payload, "subscription")
        await self._enforcer.enforce(subscription_id, reason="customer.subscription.deleted")


@dataclass
class DispatchOutcome:
    event_id: str
    event_type: str
    handled: bool


class EventDispatcher:
    """
    Routes verified events to handlers and records the outcome in the audit log.

    Unknown event types are acknowledged. Handler exceptions are recorded and
    re-raised so the route can answer 500 and let Stripe redeliver.
    """

    def __init__(
        self,
        handlers: SubscriptionEventHandlers,
        audit: Optional[WebhookEventRepository] = None,
    ):
        self._audit = audit
        self._routes: dict[str, Callable[[dict[str, Any]], Awaitable[None]]] = {
            CHECKOUT_SESSION_COMPLETED: handlers.handle_checkout_completed,
            INVOICE_PAID: handlers.handle_invoice_paid,
            SUBSCRIPTION_UPDATED: handlers.handle_subscription_updated,
            SUBSCRIPTION_DELETED: handlers.handle_subscription_deleted,
        }

    def handles(self, event_type: str) -> bool:
        return event_type in self._routes

    async def dispatch(self, event: VerifiedEvent) -> DispatchOutcome:
        handler = self._routes.get(event.type)

        if handler is None:
            logger.info(f"Unhandled event type {event.type} ({event.id}), acknowledging")
            await self._record(event, success=True, message=f"ignored: unhandled event type {event.type}")
            return DispatchOutcome(event_id=event.id, event_type=event.type, handled=False)

        logger.info(f"Processing webhook event {event.type} ({event.id}) [{event.correlation_id}]")
        try:
            await handler(event.object)
        except Exception as e:
            message = e.message if isinstance(e, BillingSyncError) else str(e)
            logger.error(f"Error processing webhook {event.type} ({event.id}): {message}")
            await self._record(event, success=False, message=message or e.__class__.__name__)
            raise

        await self._record(event, success=True)
        return DispatchOutcome(event_id=event.id, event_type=event.type, handled=True)

    async def _record(self, event: VerifiedEvent, success: bool, message: Optional[str] = None) -> None:
        if self._audit is None or not event.correlation_id:
            return
        try:
            if success:
                await self._audit.mark_succeeded(event.correlation_id, note=message)
            else:
                await self._audit.mark_failed(event.correlation_id, message or "handler failed")
        except DatabaseError as e:
            logger.warning(f"Could not update webhook audit record {event.correlation_id}: {e.message}")
