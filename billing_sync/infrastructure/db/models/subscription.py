"""
Subscription Database Model

SQLModel table for subscription data persistence.
One row per provider subscription id; rows are never deleted.
"""

from typing import Optional
from uuid import uuid4

from sqlmodel import Field, SQLModel
from sqlalchemy import BigInteger, Boolean, Column, String

from billing_sync.domain.timestamps import now_ts


class SubscriptionModel(SQLModel, table=True):
    """
    Subscription table for storing the local mirror of provider state.

    Maps to the 'subscriptions' table in PostgreSQL.
    Timestamps are Unix seconds.
    """

    __tablename__ = "subscriptions"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        sa_column=Column(String(36), primary_key=True),
    )
    user_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(36), index=True, nullable=True),
    )
    plan_id: Optional[str] = Field(default=None, sa_column=Column(String(50), nullable=True))

    # Provider IDs
    external_subscription_id: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
    )
    external_customer_id: Optional[str] = Field(
        default=None,
        sa_column=Column(String(255), index=True, nullable=True),
    )

    status: str = Field(
        default="incomplete",
        sa_column=Column(String(20), nullable=False, default="incomplete"),
    )

    # Billing period (Unix seconds)
    current_period_start: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    current_period_end: Optional[int] = Field(default=None, sa_column=Column(BigInteger, nullable=True))
    cancel_at_period_end: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )

    # Timestamps
    created_at: int = Field(default_factory=now_ts, sa_column=Column(BigInteger, nullable=False))
    updated_at: int = Field(default_factory=now_ts, sa_column=Column(BigInteger, nullable=False))
