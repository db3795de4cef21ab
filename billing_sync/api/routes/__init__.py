# API Routes Module
from billing_sync.api.routes import (
    admin,
    subscriptions,
    webhooks,
)

__all__ = [
    "admin",
    "subscriptions",
    "webhooks",
]
