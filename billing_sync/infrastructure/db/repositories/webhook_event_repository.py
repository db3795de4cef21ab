"""
Webhook Event Repository

Audit journal for inbound webhook calls. Rows are created before the
signature is checked and updated at each later stage; nothing here is ever
used to decide subscription state.
"""

import logging
from typing import Any, Optional
from uuid import uuid4

from sqlmodel import select
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from billing_sync.domain.timestamps import now_ts
from billing_sync.infrastructure.db.database import DatastoreClient
from billing_sync.infrastructure.db.models.webhook_event import (
    PENDING_SIGNATURE_CHECK,
    WebhookEventModel,
)
from billing_sync.infrastructure.exceptions import DatabaseError, PersistenceFailure


logger = logging.getLogger(__name__)

TABLE = "webhook_events"


class WebhookEventRepository:
    """Append/update access to the webhook audit log."""

    def __init__(self, client: DatastoreClient):
        self._client = client

    async def create_pending(self, payload: dict[str, Any]) -> WebhookEventModel:
        """
        Record an inbound call before anything about it is trusted.

        The event id is a local placeholder until the signature verifies.
        """
        correlation_id = str(uuid4())
        record = WebhookEventModel(
            id=correlation_id,
            event_id=f"local_{correlation_id}",
            event_type=PENDING_SIGNATURE_CHECK,
            payload=payload,
            success=False,
        )
        try:
            async with self._client.session() as session:
                session.add(record)
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                "Failed to create webhook audit record",
                operation="insert",
                table=TABLE,
                original_error=e,
            )
        logger.debug(f"Created webhook audit record {correlation_id}")
        return record

    async def record_identity(
        self,
        record_id: str,
        event_id: str,
        event_type: str,
        external_subscription_id: str,
    ) -> None:
        """Attach the verified provider identity to the audit record."""
        await self._update(
            record_id,
            event_id=event_id,
            event_type=event_type,
            external_subscription_id=external_subscription_id,
        )

    async def mark_succeeded(self, record_id: str, note: Optional[str] = None) -> None:
        await self._update(record_id, success=True, error=note)

    async def mark_failed(self, record_id: str, error: str) -> None:
        await self._update(record_id, success=False, error=error)

    async def get(self, record_id: str) -> Optional[WebhookEventModel]:
        try:
            async with self._client.session() as session:
                result = await session.execute(
                    select(WebhookEventModel).where(WebhookEventModel.id == record_id)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to read webhook audit record {record_id}",
                operation="select",
                table=TABLE,
                original_error=e,
            )

    async def _update(self, record_id: str, **values: Any) -> None:
        values["updated_at"] = now_ts()
        statement = (
            update(WebhookEventModel)
            .where(WebhookEventModel.id == record_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._client.session() as session:
                await session.execute(statement)
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to update webhook audit record {record_id}",
                operation="update",
                table=TABLE,
                original_error=e,
            )
