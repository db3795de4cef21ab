"""
Payments Infrastructure Module

Stripe provider client: subscription retrieval, updates and webhook verification.
"""

from billing_sync.infrastructure.payments.stripe_service import (
    Found,
    NotFound,
    ProviderResult,
    StripeService,
    TransientError,
)

__all__ = ["Found", "NotFound", "ProviderResult", "StripeService", "TransientError"]
