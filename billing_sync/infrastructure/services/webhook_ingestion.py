"""
Webhook Ingestion Gateway

Turns an inbound HTTP call into a VerifiedEvent. Every call, including ones
that fail verification, leaves exactly one row in the webhook audit log.
"""

import logging
from typing import Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from billing_sync.domain.provider_events import VerifiedEvent, extract_subscription_id
from billing_sync.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
)
from billing_sync.infrastructure.exceptions import (
    BillingSyncError,
    DatabaseError,
    MissingSignature,
    ValidationError,
)
from billing_sync.infrastructure.payments.stripe_service import StripeService


logger = logging.getLogger(__name__)

# Never copied into the audit log.
_REDACTED_HEADERS = frozenset({"authorization", "cookie", "x-admin-key"})


class WebhookIngestionGateway:
    """Audit first, then authenticate, then parse."""

    def __init__(self, provider: StripeService, audit: WebhookEventRepository):
        self._provider = provider
        self._audit = audit

    async def ingest(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
    ) -> VerifiedEvent:
        """
        Verify and parse one webhook delivery.

        Args:
            raw_body: Exact request bytes (signature covers these)
            signature_header: Value of the stripe-signature header
            headers: All request headers, stored for diagnostics

        Returns:
            VerifiedEvent with `correlation_id` set to the audit record id

        Raises:
            MissingSignature / InvalidSignature: terminal, answered with 400
            ValidationError: signed body that is not an event
            PersistenceFailure: audit row could not be created
        """
        record = await self._audit.create_pending({
            "headers": {
                key: value
                for key, value in (headers or {}).items()
                if key.lower() not in _REDACTED_HEADERS
            },
            "body": raw_body.decode("utf-8", errors="replace"),
        })

        if not signature_header:
            error = MissingSignature()
            logger.warning(f"Webhook {record.id} rejected: {error.message}")
            await self._fail(record.id, error.message)
            raise error

        try:
            payload = self._provider.verify_webhook_signature(raw_body, signature_header)
        except BillingSyncError as e:
            logger.warning(f"Webhook {record.id} rejected: {e.message}")
            await self._fail(record.id, e.message)
            raise

        try:
            event = VerifiedEvent.model_validate(payload)
        except PydanticValidationError as e:
            message = f"Invalid payload: not a Stripe event ({e.error_count()} validation error(s))"
            await self._fail(record.id, message)
            raise ValidationError(message, original_error=e)

        event.correlation_id = record.id
        subscription_id = extract_subscription_id(event.type, event.object)
        try:
            await self._audit.record_identity(record.id, event.id, event.type, subscription_id)
        except DatabaseError as e:
            logger.warning(f"Could not update webhook audit record {record.id}: {e.message}")

        logger.info(f"Verified webhook {event.type} ({event.id}) for {subscription_id} [{record.id}]")
        return event

    async def _fail(self, record_id: str, message: str) -> None:
        try:
            await self._audit.mark_failed(record_id, message)
        except DatabaseError as e:
            logger.warning(f"Could not update webhook audit record {record_id}: {e.message}")
