"""
SQLModel ORM Models for Billing Sync

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from billing_sync.infrastructure.db.models.subscription import SubscriptionModel
from billing_sync.infrastructure.db.models.webhook_event import (
    WebhookEventModel,
    PENDING_SIGNATURE_CHECK,
)


__all__ = [
    "SubscriptionModel",
    "WebhookEventModel",
    "PENDING_SIGNATURE_CHECK",
]
