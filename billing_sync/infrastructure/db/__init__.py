"""
Database Infrastructure Package for Billing Sync

Exports database utilities: the manager and its two datastore clients.
"""

from billing_sync.infrastructure.db.database import (
    DatabaseManager,
    DatastoreClient,
    get_db_manager,
    get_privileged_client,
    get_scoped_client,
    init_db,
    close_db,
)


__all__ = [
    "DatabaseManager",
    "DatastoreClient",
    "get_db_manager",
    "get_privileged_client",
    "get_scoped_client",
    "init_db",
    "close_db",
]
