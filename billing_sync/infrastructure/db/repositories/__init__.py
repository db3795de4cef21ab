"""
Repository Layer for Billing Sync

Exports all repository classes for dependency injection.
"""

from billing_sync.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
)
from billing_sync.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
)


__all__ = [
    "SubscriptionRepository",
    "WebhookEventRepository",
]
