"""
Webhook Event Audit Model

Append-only journal of every inbound webhook call, accepted or rejected.
Diagnostic only: never read to decide subscription state.
"""

from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, Boolean, Column, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from billing_sync.domain.timestamps import now_ts


PENDING_SIGNATURE_CHECK = "pending.signature_check"


class WebhookEventModel(SQLModel, table=True):
    """One row per inbound webhook request."""

    __tablename__ = "webhook_events"

    # Local correlation id, generated before anything is known about the request
    id: str = Field(
        default_factory=lambda: str(uuid4()),
        sa_column=Column(String(36), primary_key=True),
    )

    # Provider event id once verified, else a local placeholder
    event_id: str = Field(sa_column=Column(String(255), index=True, nullable=False))
    event_type: str = Field(
        default=PENDING_SIGNATURE_CHECK,
        sa_column=Column(String(100), nullable=False),
    )
    external_subscription_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(255), index=True, nullable=True),
    )

    payload: Optional[dict[str, Any]] = Field(
        default=None,
        sa_column=Column(JSON().with_variant(JSONB, "postgresql"), nullable=True),
    )

    success: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: int = Field(default_factory=now_ts, sa_column=Column(BigInteger, nullable=False))
    updated_at: int = Field(default_factory=now_ts, sa_column=Column(BigInteger, nullable=False))
