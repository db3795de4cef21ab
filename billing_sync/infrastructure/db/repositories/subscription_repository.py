"""
Subscription Repository

Data access layer for subscription persistence.
Follows Repository pattern for Clean Architecture.

The single write primitive for handlers is `upsert()`, keyed on the
provider subscription id. The `mark_canceled_*` methods are the write
paths used by the cancellation enforcer's tiers.
"""

import logging
from typing import Optional
from uuid import uuid4

from sqlmodel import select
from sqlalchemy import or_, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from billing_sync.domain.subscription import (
    Subscription,
    SubscriptionStatus,
    SubscriptionWrite,
)
from billing_sync.domain.timestamps import now_ts
from billing_sync.infrastructure.db.database import DatastoreClient
from billing_sync.infrastructure.db.models.subscription import SubscriptionModel
from billing_sync.infrastructure.exceptions import DatabaseError, PersistenceFailure


logger = logging.getLogger(__name__)

TABLE = "subscriptions"

_RAW_CANCEL_SQL = text(
    "UPDATE subscriptions "
    "SET status = :status, cancel_at_period_end = :cancel_at_period_end, updated_at = :updated_at "
    "WHERE id = :id"
)


class SubscriptionRepository:
    """
    Repository for subscription data access.

    Implements reads and the idempotent upsert with domain model mapping.
    The datastore client decides the capability scope (scoped vs privileged).
    """

    def __init__(self, client: DatastoreClient):
        self._client = client

    @property
    def privileged(self) -> bool:
        return self._client.privileged

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def find_by_external_id(self, external_subscription_id: str) -> Optional[Subscription]:
        """
        Get subscription by provider subscription ID.

        Args:
            external_subscription_id: Stripe subscription ID (sub_...)

        Returns:
            Subscription domain model or None
        """
        try:
            async with self._client.session() as session:
                model = await self._get_model(session, external_subscription_id)
                return self._to_domain(model) if model else None
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Failed to read subscription {external_subscription_id}",
                operation="select",
                table=TABLE,
                original_error=e,
            )

    async def find_active_by_user(self, user_id: str) -> Optional[Subscription]:
        """
        Get the user's active subscription.

        A user may own several historical rows; the most recently updated
        active one wins.
        """
        statement = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.user_id == user_id,
                SubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
            )
            .order_by(SubscriptionModel.updated_at.desc())
            .limit(1)
        )
        return await self._first(statement, "select_active_by_user")

    async def find_latest_by_user(self, user_id: str) -> Optional[Subscription]:
        """Get the user's most recently updated subscription, any status."""
        statement = (
            select(SubscriptionModel)
            .where(SubscriptionModel.user_id == user_id)
            .order_by(SubscriptionModel.updated_at.desc())
            .limit(1)
        )
        return await self._first(statement, "select_latest_by_user")

    async def find_open_by_user(self, user_id: str) -> list[Subscription]:
        """All of the user's subscriptions that are not canceled yet."""
        statement = select(SubscriptionModel).where(
            SubscriptionModel.user_id == user_id,
            SubscriptionModel.status != SubscriptionStatus.CANCELED.value,
        )
        return await self._all(statement, "select_open_by_user")

    async def find_with_invalid_periods(self, limit: int = 100) -> list[Subscription]:
        """Non-canceled subscriptions whose period end is not after its start."""
        statement = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status != SubscriptionStatus.CANCELED.value,
                or_(
                    SubscriptionModel.current_period_start.is_(None),
                    SubscriptionModel.current_period_end.is_(None),
                    SubscriptionModel.current_period_end <= SubscriptionModel.current_period_start,
                ),
            )
            .order_by(SubscriptionModel.updated_at)
            .limit(limit)
        )
        return await self._all(statement, "select_invalid_periods")

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def upsert(self, write: SubscriptionWrite) -> Subscription:
        """
        Create or update a subscription by provider subscription id.

        Only the fields set on `write` are written; the merge with an
        existing row happens inside the datastore's ON CONFLICT clause.
        Re-applying identical values is a no-op and leaves `updated_at` alone.

        Raises:
            PersistenceFailure: if the datastore rejects the write
        """
        changes = write.changes()
        key = write.external_subscription_id

        try:
            async with self._client.session() as session:
                existing = await self._get_model(session, key)
                if existing is not None and all(
                    getattr(existing, field) == value for field, value in changes.items()
                ):
                    logger.debug(f"Upsert for {key} is a no-op")
                    return self._to_domain(existing)

                now = now_ts()
                values = {
                    "id": str(uuid4()),
                    "external_subscription_id": key,
                    "status": SubscriptionStatus.INCOMPLETE.value,
                    "cancel_at_period_end": False,
                    "created_at": now,
                    **changes,
                    "updated_at": now,
                }

                stmt = self._insert(SubscriptionModel).values(**values)
                set_ = {field: stmt.excluded[field] for field in changes}
                set_["updated_at"] = now
                stmt = stmt.on_conflict_do_update(
                    index_elements=["external_subscription_id"],
                    set_=set_,
                )
                await session.execute(stmt)

                model = await self._get_model(session, key, refresh=True)
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Failed to upsert subscription {key}",
                operation="upsert",
                table=TABLE,
                original_error=e,
            )

        logger.info(
            f"Upserted subscription {key} "
            f"(fields={sorted(changes)}, status={model.status})"
        )
        return self._to_domain(model)

    async def mark_canceled_by_external_id(self, external_subscription_id: str) -> int:
        """
        Set status=canceled by provider subscription id.

        Returns:
            Number of rows affected
        """
        statement = (
            update(SubscriptionModel)
            .where(SubscriptionModel.external_subscription_id == external_subscription_id)
            .values(**self._cancel_values())
            .execution_options(synchronize_session=False)
        )
        return await self._execute_update(statement, "cancel_by_external_id")

    async def mark_canceled_by_id(self, subscription_id: str) -> int:
        """Set status=canceled by local primary key. Returns rows affected."""
        statement = (
            update(SubscriptionModel)
            .where(SubscriptionModel.id == subscription_id)
            .values(**self._cancel_values())
            .execution_options(synchronize_session=False)
        )
        return await self._execute_update(statement, "cancel_by_id")

    async def mark_canceled_raw(self, subscription_id: str) -> int:
        """
        Raw UPDATE statement through the privileged connection.

        Last-resort path for the cancellation enforcer.
        """
        if not self._client.privileged:
            raise PersistenceFailure(
                "Raw cancellation requires the privileged datastore client",
                operation="cancel_raw",
                table=TABLE,
            )
        params = {"id": subscription_id, **self._cancel_values()}
        return await self._execute_update(_RAW_CANCEL_SQL.bindparams(**params), "cancel_raw")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _insert(self, model):
        if self._client.dialect == "sqlite":
            return sqlite_insert(model)
        return pg_insert(model)

    @staticmethod
    def _cancel_values() -> dict:
        return {
            "status": SubscriptionStatus.CANCELED.value,
            "cancel_at_period_end": True,
            "updated_at": now_ts(),
        }

    async def _get_model(
        self,
        session: AsyncSession,
        external_subscription_id: str,
        refresh: bool = False,
    ) -> Optional[SubscriptionModel]:
        statement = select(SubscriptionModel).where(
            SubscriptionModel.external_subscription_id == external_subscription_id
        )
        if refresh:
            statement = statement.execution_options(populate_existing=True)
        result = await session.execute(statement)
        return result.scalar_one_or_none()

    async def _first(self, statement, operation: str) -> Optional[Subscription]:
        try:
            async with self._client.session() as session:
                result = await session.execute(statement)
                model = result.scalars().first()
                return self._to_domain(model) if model else None
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Subscription query failed: {operation}",
                operation=operation,
                table=TABLE,
                original_error=e,
            )

    async def _all(self, statement, operation: str) -> list[Subscription]:
        try:
            async with self._client.session() as session:
                result = await session.execute(statement)
                return [self._to_domain(model) for model in result.scalars().all()]
        except SQLAlchemyError as e:
            raise DatabaseError(
                f"Subscription query failed: {operation}",
                operation=operation,
                table=TABLE,
                original_error=e,
            )

    async def _execute_update(self, statement, operation: str) -> int:
        try:
            async with self._client.session() as session:
                result = await session.execute(statement)
                return result.rowcount or 0
        except SQLAlchemyError as e:
            raise PersistenceFailure(
                f"Subscription update failed: {operation}",
                operation=operation,
                table=TABLE,
                original_error=e,
            )

    # =========================================================================
    # Mapping Methods
    # =========================================================================

    def _to_domain(self, model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=model.id,
            user_id=model.user_id,
            plan_id=model.plan_id,
            external_subscription_id=model.external_subscription_id,
            external_customer_id=model.external_customer_id,
            status=SubscriptionStatus(model.status),
            current_period_start=model.current_period_start,
            current_period_end=model.current_period_end,
            cancel_at_period_end=bool(model.cancel_at_period_end),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )
