"""Database layer for Mail Sweeper.

This module provides SQLite database access with async operations.

Usage:
    from sweeper.db import DatabaseStore

    store = DatabaseStore("data/sweeper.db")
    await store.initialize()

    scan = await store.create_scan("scan-1", user_id="u1", query="in:inbox")
    actions = await store.list_scan_actions("u1", "scan-1", status="pending")
"""

from sweeper.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from sweeper.db.store import (
    ActionBatch,
    ActionRecord,
    DatabaseStore,
    ScanBatchUpdate,
    ScanRecord,
    SenderCacheEntry,
    UsageRecord,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    # Dataclasses
    "ActionBatch",
    "ActionRecord",
    "ScanBatchUpdate",
    "ScanRecord",
    "SenderCacheEntry",
    "UsageRecord",
]
