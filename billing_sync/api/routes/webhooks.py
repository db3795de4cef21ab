"""
Stripe Webhook Handler

Handles Stripe webhook events for subscription lifecycle management.

Every delivery is recorded in the webhook audit log before its signature is
checked. Handlers are idempotent, so redelivered events are simply applied
again instead of being deduplicated.

Responses:
- 200 {"received": true}: processed, or an event type we do not handle
- 400: missing/invalid signature or a signed body that is not an event (not retried)
- 500: handler failure; Stripe redelivers
"""

import logging

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse

from billing_sync.api.dependencies import EventDispatcherDep, IngestionGatewayDep
from billing_sync.infrastructure.exceptions import (
    BillingSyncError,
    ValidationError,
    WebhookSignatureError,
)


logger = logging.getLogger(__name__)

router = APIRouter()


def _rejected(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"received": False, "error": error})


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    gateway: IngestionGatewayDep,
    dispatcher: EventDispatcherDep,
):
    """
    Handle Stripe webhook events.

    Verifies the signature against the raw body, then routes the event to
    its handler.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = await gateway.ingest(payload, signature, dict(request.headers))
    except (WebhookSignatureError, ValidationError) as e:
        return _rejected(status.HTTP_400_BAD_REQUEST, e.message)
    except BillingSyncError as e:
        logger.error(f"Webhook ingestion failed: {e.message}")
        return _rejected(status.HTTP_500_INTERNAL_SERVER_ERROR, e.message)

    try:
        await dispatcher.dispatch(event)
    except BillingSyncError as e:
        return _rejected(status.HTTP_500_INTERNAL_SERVER_ERROR, e.message)
    except Exception as e:
        logger.exception(f"Unexpected error processing webhook {event.type} ({event.id})")
        return _rejected(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e) or e.__class__.__name__)

    return {"received": True}
