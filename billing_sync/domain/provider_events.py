"""
Provider Event Schemas

Explicit pydantic schemas for the Stripe objects the engine reads. Webhook
payloads and API responses are validated against these before any handler
touches them; a payload that does not fit is rejected instead of coerced.
"""

from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from billing_sync.infrastructure.exceptions import MalformedProviderData


CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
INVOICE_PAID = "invoice.paid"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _expandable_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Recurring(_ProviderModel):
    interval: Optional[str] = None
    interval_count: int = 1


class Price(_ProviderModel):
    id: Optional[str] = None
    recurring: Optional[Recurring] = None


class SubscriptionItem(_ProviderModel):
    id: Optional[str] = None
    price: Optional[Price] = None
    # Newer API versions moved the period onto the item.
    current_period_start: Optional[Any] = None
    current_period_end: Optional[Any] = None


class SubscriptionItemList(_ProviderModel):
    data: list[SubscriptionItem] = Field(default_factory=list)


class ProviderSubscription(_ProviderModel):
    """A Stripe Subscription object."""
    id: str
    customer: Optional[str] = None
    status: str
    current_period_start: Optional[Any] = None
    current_period_end: Optional[Any] = None
    cancel_at_period_end: bool = False
    items: SubscriptionItemList = Field(default_factory=SubscriptionItemList)
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def _customer_id(cls, value: Any) -> Optional[str]:
        return _expandable_id(value)

    @field_validator("cancel_at_period_end", mode="before")
    @classmethod
    def _truthy(cls, value: Any) -> bool:
        return bool(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> dict:
        return dict(value or {})

    @property
    def is_annual(self) -> bool:
        """True when any line item bills yearly."""
        return any(
            item.price is not None
            and item.price.recurring is not None
            and item.price.recurring.interval == "year"
            for item in self.items.data
        )

    @property
    def period_start(self) -> Any:
        if self.current_period_start is not None:
            return self.current_period_start
        return next(
            (item.current_period_start for item in self.items.data
             if item.current_period_start is not None),
            None,
        )

    @property
    def period_end(self) -> Any:
        if self.current_period_end is not None:
            return self.current_period_end
        return next(
            (item.current_period_end for item in self.items.data
             if item.current_period_end is not None),
            None,
        )

    @property
    def price_ids(self) -> list[str]:
        return [item.price.id for item in self.items.data if item.price and item.price.id]


class CheckoutSession(_ProviderModel):
    """A Stripe Checkout Session object."""
    id: str
    subscription: Optional[str] = None
    customer: Optional[str] = None
    status: Optional[str] = None
    mode: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("subscription", "customer", mode="before")
    @classmethod
    def _reference_id(cls, value: Any) -> Optional[str]:
        return _expandable_id(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata(cls, value: Any) -> dict:
        return dict(value or {})

    @property
    def user_id(self) -> Optional[str]:
        return self.metadata.get("userId") or self.metadata.get("user_id")

    @property
    def plan_id(self) -> Optional[str]:
        return self.metadata.get("planId") or self.metadata.get("plan_id")


class _SubscriptionDetails(_ProviderModel):
    subscription: Optional[str] = None

    @field_validator("subscription", mode="before")
    @classmethod
    def _reference_id(cls, value: Any) -> Optional[str]:
        return _expandable_id(value)


class _InvoiceParent(_ProviderModel):
    subscription_details: Optional[_SubscriptionDetails] = None


class Invoice(_ProviderModel):
    """A Stripe Invoice object."""
    id: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None
    parent: Optional[_InvoiceParent] = None

    @field_validator("subscription", "customer", mode="before")
    @classmethod
    def _reference_id(cls, value: Any) -> Optional[str]:
        return _expandable_id(value)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        if self.parent and self.parent.subscription_details:
            return self.parent.subscription_details.subscription
        return None


class EventData(_ProviderModel):
    object: dict[str, Any]


class VerifiedEvent(_ProviderModel):
    """A webhook event whose signature has been verified."""
    id: str
    type: str
    created: Optional[int] = None
    data: EventData
    # Audit record id assigned on ingestion.
    correlation_id: Optional[str] = Field(default=None, exclude=True)

    @property
    def object(self) -> dict[str, Any]:
        return self.data.object


def extract_subscription_id(event_type: str, obj: dict[str, Any]) -> str:
    """
    Best-effort subscription id for the audit log.

    Subscription events carry it as the object id; checkout sessions and
    invoices reference it.
    """
    if "subscription" in event_type:
        return _expandable_id(obj.get("id")) or "unknown"
    if "checkout.session" in event_type or "invoice" in event_type:
        reference = _expandable_id(obj.get("subscription"))
        if not reference:
            details = (obj.get("parent") or {}).get("subscription_details") or {}
            reference = _expandable_id(details.get("subscription"))
        return reference or "unknown"
    return "unknown"


def parse_provider_object(model: type[BaseModel], payload: Any, context: str):
    """Validate a provider object, turning schema errors into MalformedProviderData."""
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise MalformedProviderData(
            f"Unexpected {context} payload: {e.error_count()} validation error(s)",
            field=context,
            original_error=e,
        )
