"""
Subscription Domain Models

Domain models for subscription reconciliation following Clean Architecture.
Enums, DTOs, and domain entities for the subscription bounded context.
"""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field


class SubscriptionStatus(str, Enum):
    """Local subscription lifecycle status."""
    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Provider statuses collapsed onto the local lifecycle.
_PROVIDER_STATUS_MAP = {
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "trialing": SubscriptionStatus.ACTIVE,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_provider_status(provider_status: Optional[str]) -> SubscriptionStatus:
    """Map a provider status string onto SubscriptionStatus (trialing -> active)."""
    if not provider_status:
        return SubscriptionStatus.INCOMPLETE
    return _PROVIDER_STATUS_MAP.get(provider_status.lower(), SubscriptionStatus.INCOMPLETE)


class ReconciliationAction(str, Enum):
    """What the diagnostic did about drift."""
    NONE = "none"
    CORRECTED = "corrected"
    FLAGGED = "flagged"


# =============================================================================
# Domain Entities
# =============================================================================

class Subscription(BaseModel):
    """Core subscription domain entity. Timestamps are Unix seconds."""
    id: str
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    external_subscription_id: str
    external_customer_id: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.INCOMPLETE
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False
    created_at: int
    updated_at: int

    model_config = ConfigDict(from_attributes=True)


class SubscriptionWrite(BaseModel):
    """
    Partial subscription record handed to the store.

    Only fields that were explicitly set are written; see `changes()`.
    """
    external_subscription_id: str
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: Optional[bool] = None

    def changes(self) -> dict[str, Any]:
        """Explicitly set, non-null fields other than the key."""
        values = self.model_dump(exclude_unset=True, exclude_none=True)
        values.pop("external_subscription_id", None)
        if "status" in values:
            values["status"] = SubscriptionStatus(values["status"]).value
        return values


class FieldMismatch(BaseModel):
    """One field that differs between local and provider state."""
    field: str
    local_value: Any = None
    external_value: Any = None


class ReconciliationResult(BaseModel):
    """Outcome of a single diagnostic run. Never persisted."""
    external_subscription_id: Optional[str] = None
    local_status: Optional[SubscriptionStatus] = None
    external_status: Optional[str] = None
    timestamp_drift: bool = False
    mismatches: list[FieldMismatch] = Field(default_factory=list)
    action: ReconciliationAction = ReconciliationAction.NONE
    note: Optional[str] = None


class CancellationReport(BaseModel):
    """What the cancellation enforcer did for one subscription."""
    external_subscription_id: str
    tier: Optional[int] = Field(default=None, description="Tier that claimed the write (1-3)")
    outcome: str = Field(description="canceled | scheduled | not_found | unresolved")
    verified: bool = False
    errors: list[str] = Field(default_factory=list)


# =============================================================================
# Request/Response DTOs
# =============================================================================

class SubscriptionResponse(BaseModel):
    """Response DTO for the caller's subscription."""
    plan_id: Optional[str] = None
    status: SubscriptionStatus
    external_subscription_id: str
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: bool = False


class CheckoutVerification(BaseModel):
    """Response DTO for the post-checkout verification poller."""
    success: bool
    plan_id: Optional[str] = None
    subscription: Optional[SubscriptionResponse] = None
    error: Optional[str] = None


class CurrentSubscriptionResponse(BaseModel):
    """Response DTO for the caller's active subscription and entitlements."""
    subscription: Optional[SubscriptionResponse] = None
    plan_id: str = "free"
    max_funnels: int
    max_leads: int


class CancelSubscriptionRequest(BaseModel):
    """Request DTO for self-service cancellation."""
    at_period_end: bool = Field(
        default=False,
        description="Keep access until the period ends instead of cancelling now",
    )


class CancelSubscriptionResponse(BaseModel):
    """Response DTO for self-service cancellation."""
    success: bool = True
    message: str
    external_subscription_id: str


class AdminCancelRequest(BaseModel):
    """Request DTO for administrative cancellation."""
    subscription_id: Optional[str] = Field(default=None, description="Provider subscription id (sub_...)")
    user_id: Optional[str] = Field(default=None, description="Cancel every open subscription of this user")


class AdminCancelResponse(BaseModel):
    """Response DTO for administrative cancellation."""
    success: bool
    message: str
    results: list[CancellationReport] = Field(default_factory=list)


def to_response(subscription: Subscription) -> SubscriptionResponse:
    return SubscriptionResponse(
        plan_id=subscription.plan_id,
        status=subscription.status,
        external_subscription_id=subscription.external_subscription_id,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
    )
