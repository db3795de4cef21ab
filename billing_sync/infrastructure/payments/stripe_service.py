"""
Stripe Provider Service

Clean Architecture infrastructure service wrapping the Stripe SDK.

Every API call returns a tagged result instead of raising:
- Found(value): the object, converted to a plain dict
- NotFound(resource_id): Stripe reports resource_missing / 404
- TransientError(message): timeout, network, rate limit, or API failure

Webhook signature verification is local and synchronous and raises
InvalidSignature on failure.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar, Union

import stripe
from stripe import InvalidRequestError, SignatureVerificationError, StripeError

from billing_sync.config.settings import get_settings
from billing_sync.infrastructure.exceptions import ConfigurationError, InvalidSignature


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Found(Generic[T]):
    value: T


@dataclass(frozen=True)
class NotFound:
    resource_id: str


@dataclass(frozen=True)
class TransientError:
    message: str
    operation: Optional[str] = None


ProviderResult = Union[Found[dict[str, Any]], NotFound, TransientError]


def to_plain(obj: Any) -> dict[str, Any]:
    """Convert a StripeObject (or dict) into plain JSON-compatible dicts."""
    if type(obj) is dict:
        return obj
    return json.loads(str(obj))


class StripeService:
    """
    Stripe API client with bounded timeouts and tagged results.

    The SDK is synchronous; calls run in a worker thread so a slow provider
    only suspends the event being handled.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        tolerance_seconds: Optional[int] = None,
    ):
        """Initialize Stripe with API key from settings."""
        settings = get_settings()
        self._api_key = api_key or settings.stripe_secret_key
        self._webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._timeout = timeout_seconds or settings.provider_timeout_seconds
        self._tolerance = tolerance_seconds or settings.stripe_webhook_tolerance_seconds

        if self._api_key:
            stripe.api_key = self._api_key
        if settings.stripe_api_version:
            stripe.api_version = settings.stripe_api_version

    async def _call(
        self,
        operation: str,
        resource_id: str,
        fn: Callable[..., Any],
        *args,
        **kwargs,
    ) -> ProviderResult:
        try:
            obj = await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Stripe {operation}({resource_id}) timed out after {self._timeout}s")
            return TransientError(f"Timed out after {self._timeout}s", operation)
        except InvalidRequestError as e:
            if e.code == "resource_missing" or e.http_status == 404:
                logger.info(f"Stripe {operation}: {resource_id} not found")
                return NotFound(resource_id)
            logger.error(f"Stripe {operation}({resource_id}) rejected: {e}")
            return TransientError(str(e), operation)
        except StripeError as e:
            logger.warning(f"Stripe {operation}({resource_id}) failed: {e}")
            return TransientError(str(e), operation)

        return Found(to_plain(obj))

    # =========================================================================
    # Subscription Queries
    # =========================================================================

    async def retrieve_subscription(self, subscription_id: str) -> ProviderResult:
        """
        Retrieve a subscription by ID.

        Args:
            subscription_id: Stripe subscription ID

        Returns:
            Found(subscription dict) | NotFound | TransientError
        """
        return await self._call(
            "retrieve_subscription",
            subscription_id,
            stripe.Subscription.retrieve,
            subscription_id,
        )

    async def retrieve_checkout_session(self, session_id: str) -> ProviderResult:
        """Retrieve a Checkout Session by ID."""
        return await self._call(
            "retrieve_checkout_session",
            session_id,
            stripe.checkout.Session.retrieve,
            session_id,
        )

    async def update_subscription(
        self,
        subscription_id: str,
        patch: dict[str, Any],
    ) -> ProviderResult:
        """
        Apply a partial update to a subscription.

        Example: update_subscription("sub_123", {"cancel_at_period_end": True})
        """
        return await self._call(
            "update_subscription",
            subscription_id,
            stripe.Subscription.modify,
            subscription_id,
            **patch,
        )

    async def cancel_subscription(self, subscription_id: str) -> ProviderResult:
        """Cancel a subscription immediately on the provider side."""
        return await self._call(
            "cancel_subscription",
            subscription_id,
            stripe.Subscription.cancel,
            subscription_id,
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
    ) -> dict[str, Any]:
        """
        Verify webhook signature and parse the event body.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            The event as a plain dict

        Raises:
            InvalidSignature if the signature or the payload is invalid
            ConfigurationError if no webhook secret is configured
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise InvalidSignature(f"Invalid payload: {e}", original_error=e)

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self._webhook_secret,
                self._tolerance,
            )
        except SignatureVerificationError as e:
            raise InvalidSignature(f"Invalid signature: {e}", original_error=e)

        try:
            event = json.loads(body)
        except ValueError as e:
            raise InvalidSignature(f"Invalid payload: {e}", original_error=e)

        if not isinstance(event, dict):
            raise InvalidSignature("Invalid payload: event is not an object")
        return event


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()

    return _stripe_service_instance
