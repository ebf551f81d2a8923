"""SQLite database schema and initialization for Mail Sweeper.

Tables:
- scans: One row per scan; the ordered message id list and batch progress
- actions: One suggested action per classified message per scan
- action_batches: Groups the actions executed together, for undo
- action_log: Audit trail of executed, failed, undone and rejected actions
- sender_cache: Persistent sender reputation entries
- user_feedback: Category/action corrections from rejects
- usage_tracking: Monthly per-user usage totals

Usage:
    from sweeper.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/sweeper.db")
"""

import stat
from pathlib import Path

import aiosqlite

from sweeper.core.errors import DatabaseError
from sweeper.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

REQUIRED_TABLES = (
    "scans",
    "actions",
    "action_batches",
    "action_log",
    "sender_cache",
    "user_feedback",
    "usage_tracking",
)

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS scans (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    query TEXT NOT NULL,
    phase TEXT NOT NULL DEFAULT 'listing'
        CHECK (phase IN ('listing', 'processing', 'completed', 'failed')),
    message_ids_json TEXT NOT NULL DEFAULT '[]',    -- Ordered ids from listing
    total_ids INTEGER NOT NULL DEFAULT 0,
    processed_count INTEGER NOT NULL DEFAULT 0,     -- Monotonic, <= total_ids
    category_counts_json TEXT NOT NULL DEFAULT '{}',
    source_counts_json TEXT NOT NULL DEFAULT '{}',
    skipped_count INTEGER NOT NULL DEFAULT 0,       -- Missing or unparseable messages
    llm_calls INTEGER NOT NULL DEFAULT 0,
    llm_input_tokens INTEGER NOT NULL DEFAULT 0,
    llm_output_tokens INTEGER NOT NULL DEFAULT 0,
    llm_cost_usd REAL NOT NULL DEFAULT 0,
    error TEXT,
    started_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    completed_at DATETIME,
    CHECK (processed_count <= total_ids)
);

CREATE INDEX IF NOT EXISTS idx_scans_user ON scans(user_id, started_at);

CREATE TABLE IF NOT EXISTS action_batches (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    scan_id TEXT,
    executed_at DATETIME NOT NULL,
    total_actions INTEGER NOT NULL,
    undone_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_action_batches_user ON action_batches(user_id);

CREATE TABLE IF NOT EXISTS actions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    scan_id TEXT NOT NULL REFERENCES scans(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL,
    thread_id TEXT,
    sender_address TEXT NOT NULL,
    sender_name TEXT,
    subject_preview TEXT,                   -- Sanitized, max 100 chars
    email_date DATETIME,
    category TEXT NOT NULL,
    confidence REAL NOT NULL CHECK (confidence >= 0 AND confidence <= 1),
    source TEXT NOT NULL
        CHECK (source IN ('heuristic', 'cache', 'llm', 'user_override')),
    reasoning TEXT,
    action_type TEXT NOT NULL
        CHECK (action_type IN ('archive', 'move_to_trash', 'mark_read', 'keep', 'unsubscribe')),
    executed_action_type TEXT,              -- Effective type at execution (override wins)
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'executing', 'executed', 'rejected')),
    batch_id TEXT REFERENCES action_batches(id),
    created_at DATETIME NOT NULL,
    executed_at DATETIME,
    UNIQUE (scan_id, message_id)
);

CREATE INDEX IF NOT EXISTS idx_actions_user_status ON actions(user_id, status);
CREATE INDEX IF NOT EXISTS idx_actions_batch ON actions(batch_id);

CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    user_id TEXT NOT NULL,
    action_id TEXT,
    batch_id TEXT,
    event TEXT NOT NULL,                    -- 'executed', 'failed', 'undone', 'rejected'
    details_json TEXT
);

CREATE INDEX IF NOT EXISTS idx_action_log_action ON action_log(action_id);

CREATE TABLE IF NOT EXISTS sender_cache (
    user_id TEXT NOT NULL,
    sender_address TEXT NOT NULL,           -- Lower-cased
    category TEXT NOT NULL,
    confidence REAL NOT NULL,
    source TEXT NOT NULL,
    cached_at DATETIME NOT NULL,
    PRIMARY KEY (user_id, sender_address)
);

CREATE TABLE IF NOT EXISTS user_feedback (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    action_id TEXT NOT NULL,
    sender_address TEXT NOT NULL,
    original_category TEXT NOT NULL,
    original_action TEXT NOT NULL,
    corrected_category TEXT,
    corrected_action TEXT,
    feedback TEXT,
    created_at DATETIME NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_tracking (
    user_id TEXT NOT NULL,
    period_start TEXT NOT NULL,             -- YYYY-MM-01
    scans_count INTEGER NOT NULL DEFAULT 0,
    emails_processed INTEGER NOT NULL DEFAULT 0,
    llm_calls INTEGER NOT NULL DEFAULT 0,
    llm_input_tokens INTEGER NOT NULL DEFAULT 0,
    llm_output_tokens INTEGER NOT NULL DEFAULT 0,
    llm_cost_usd REAL NOT NULL DEFAULT 0,
    PRIMARY KEY (user_id, period_start)
);
"""


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode for
    concurrent access, and creates all tables and indexes.

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "wal_mode_not_enabled",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

        # Owner read/write only: sender addresses and subjects are PII
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info("database_initialized", db_path=str(db_path), schema_version=SCHEMA_VERSION)

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Check that all required tables exist."""
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}
    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False

    missing = set(REQUIRED_TABLES) - existing_tables
    if missing:
        logger.warning("database_tables_missing", missing=sorted(missing), db_path=str(db_path))
        return False
    return True
