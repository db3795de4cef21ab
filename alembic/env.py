"""
Alembic environment for the billing_sync tables.

Migrations run against the privileged datastore URL through an async
engine. Autogenerate only looks at `subscriptions` and `webhook_events`;
everything else in the Supabase database belongs to other services.
"""

import asyncio
import os
import sys
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlmodel import SQLModel

from billing_sync.infrastructure.db.database import get_database_url_from_supabase

# Registers both tables on SQLModel.metadata
from billing_sync.infrastructure.db.models import (  # noqa: F401
    SubscriptionModel,
    WebhookEventModel,
)

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata

MANAGED_TABLES = {"subscriptions", "webhook_events"}


def include_object(object, name, type_, reflected, compare_to):
    """Restrict autogenerate to MANAGED_TABLES and their indexes/constraints."""
    if type_ == "table":
        return name in MANAGED_TABLES
    table = getattr(object, "table", None)
    if table is not None:
        return table.name in MANAGED_TABLES
    return True


def get_url():
    """Privileged database URL (DATABASE_URL or derived from Supabase settings)."""
    return get_database_url_from_supabase()


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    url = get_url()
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_object=include_object,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    """Configure the context on a live connection and run."""
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """Run against the database through a throwaway async engine."""
    connectable = create_async_engine(
        get_url(),
        poolclass=pool.NullPool,
    )

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
