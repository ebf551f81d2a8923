"""Database store with async operations for all Mail Sweeper tables.

This module provides the DatabaseStore class that encapsulates all database
operations. It uses aiosqlite for async access and returns dataclasses.

Multi-statement writes that must be atomic (committing a scan batch) run in
a `BEGIN IMMEDIATE` transaction so concurrent writers serialize on the
SQLite write lock instead of interleaving.

Usage:
    from sweeper.db.store import DatabaseStore

    store = DatabaseStore("data/sweeper.db")
    await store.initialize()

    scan = await store.create_scan(scan_id, user_id="u1", query="in:inbox")
    await store.commit_scan_batch(scan_id, expected_processed=0, update=update)
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Literal, TypeVar

import aiosqlite

from sweeper.core.errors import ConflictError, DatabaseError
from sweeper.core.logging import get_logger
from sweeper.db.models import init_database

logger = get_logger(__name__)

# Ids per IN (...) clause; keeps statements well under SQLite's variable limit
DEFAULT_READ_CHUNK_SIZE = 100

# Actions left `executing` by an older batch belong to a crashed execution
DEFAULT_STALE_CLAIM_SECONDS = 900

# Subjects are stored only as a short, already-sanitized preview
MAX_SUBJECT_PREVIEW_LENGTH = 100

ScanPhase = Literal["listing", "processing", "completed", "failed"]
ActionStatus = Literal["pending", "executing", "executed", "rejected"]

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(UTC)


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _chunks(items: list[T], size: int) -> Iterable[list[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


@dataclass
class ScanRecord:
    """Scan row. Single source of truth for batch progress."""

    id: str
    user_id: str
    query: str
    phase: ScanPhase
    started_at: datetime
    updated_at: datetime
    message_ids: list[str] = field(default_factory=list)
    total_ids: int = 0
    processed_count: int = 0
    category_counts: dict[str, int] = field(default_factory=dict)
    source_counts: dict[str, int] = field(default_factory=dict)
    skipped_count: int = 0
    llm_calls: int = 0
    llm_input_tokens: int = 0
    llm_output_tokens: int = 0
    llm_cost_usd: float = 0.0
    error: str | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase in ("completed", "failed")


@dataclass
class ActionRecord:
    """Suggested action for one message in one scan."""

    id: str
    user_id: str
    scan_id: str
    message_id: str
    sender_address: str
    category: str
    confidence: float
    source: str
    action_type: str
    created_at: datetime
    thread_id: str | None = None
    sender_name: str | None = None
    subject_preview: str | None = None
    email_date: datetime | None = None
    reasoning: str | None = None
    executed_action_type: str | None = None
    status: ActionStatus = "pending"
    batch_id: str | None = None
    executed_at: datetime | None = None


@dataclass(frozen=True)
class ActionBatch:
    """Actions executed together by one execute call."""

    id: str
    user_id: str
    executed_at: datetime
    total_actions: int
    scan_id: str | None = None
    undone_at: datetime | None = None


@dataclass(frozen=True)
class SenderCacheEntry:
    """Stored sender reputation (confidence before decay)."""

    user_id: str
    sender_address: str
    category: str
    confidence: float
    source: str
    cached_at: datetime


@dataclass(frozen=True)
class UsageRecord:
    """Monthly usage totals for one user."""

    user_id: str
    period_start: str
    scans_count: int = 0
    emails_processed: int = 0
    llm_calls: int = 0
    llm_input_tokens: int = 0
    llm_output_tokens: int = 0
    llm_cost_usd: float = 0.0


@dataclass
class ScanBatchUpdate:
    """Everything one processed batch adds to a scan, applied atomically."""

    new_processed_count: int
    actions: list[ActionRecord] = field(default_factory=list)
    category_counts: dict[str, int] = field(default_factory=dict)
    source_counts: dict[str, int] = field(default_factory=dict)
    skipped_count: int = 0
    llm_calls: int = 0
    llm_input_tokens: int = 0
    llm_output_tokens: int = 0
    llm_cost_usd: float = 0.0


def _merge_counts(current: dict[str, int], delta: dict[str, int]) -> dict[str, int]:
    merged = dict(current)
    for key, value in delta.items():
        merged[key] = merged.get(key, 0) + value
    return merged


class DatabaseStore:
    """Async store for scans, actions, sender cache, feedback and usage.

    Attributes:
        db_path: Path to the SQLite database file
        read_chunk_size: Ids per IN (...) query for chunked reads and writes
    """

    def __init__(self, db_path: str | Path, read_chunk_size: int = DEFAULT_READ_CHUNK_SIZE):
        self.db_path = Path(db_path)
        self.read_chunk_size = read_chunk_size
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s so concurrent batch calls wait for the write lock
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA temp_store = MEMORY")
            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Scan Operations
    # =========================================================================

    async def create_scan(self, scan_id: str, user_id: str, query: str) -> ScanRecord:
        """Insert a new scan in the listing phase."""
        now = _now()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO scans (id, user_id, query, phase, started_at, updated_at)
                    VALUES (?, ?, ?, 'listing', ?, ?)
                    """,
                    (scan_id, user_id, query, now.isoformat(), now.isoformat()),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("scan_create_failed", scan_id=scan_id, error=str(e))
            raise DatabaseError(f"Failed to create scan {scan_id}: {e}") from e

        return ScanRecord(
            id=scan_id,
            user_id=user_id,
            query=query,
            phase="listing",
            started_at=now,
            updated_at=now,
        )

    async def set_scan_listed(self, scan_id: str, message_ids: list[str]) -> ScanPhase:
        """Store the listed ids and move the scan out of the listing phase.

        Returns:
            'processing', or 'completed' when the listing was empty
        """
        now = _now().isoformat()
        phase: ScanPhase = "processing" if message_ids else "completed"
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE scans
                    SET message_ids_json = ?, total_ids = ?, phase = ?,
                        updated_at = ?, completed_at = ?
                    WHERE id = ? AND phase = 'listing'
                    """,
                    (
                        json.dumps(message_ids),
                        len(message_ids),
                        phase,
                        now,
                        now if phase == "completed" else None,
                        scan_id,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("scan_listing_save_failed", scan_id=scan_id, error=str(e))
            raise DatabaseError(f"Failed to store listed ids for scan {scan_id}: {e}") from e
        return phase

    async def get_scan(self, user_id: str, scan_id: str) -> ScanRecord | None:
        """Get a scan owned by `user_id`, or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM scans WHERE id = ? AND user_id = ?",
                    (scan_id, user_id),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("scan_get_failed", scan_id=scan_id, error=str(e))
            raise DatabaseError(f"Failed to get scan {scan_id}: {e}") from e
        return self._row_to_scan(row) if row else None

    async def list_scans(self, user_id: str, limit: int = 20) -> list[ScanRecord]:
        """Most recent scans for a user, newest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM scans WHERE user_id = ? ORDER BY started_at DESC LIMIT ?",
                    (user_id, limit),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("scan_list_failed", error=str(e))
            raise DatabaseError(f"Failed to list scans: {e}") from e
        return [self._row_to_scan(row) for row in rows]

    async def mark_scan_failed(self, scan_id: str, error: str) -> None:
        """Move a non-terminal scan to failed with an error message."""
        now = _now().isoformat()
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    UPDATE scans SET phase = 'failed', error = ?, updated_at = ?, completed_at = ?
                    WHERE id = ? AND phase IN ('listing', 'processing')
                    """,
                    (error[:500], now, now, scan_id),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("scan_mark_failed_failed", scan_id=scan_id, error=str(e))
            raise DatabaseError(f"Failed to mark scan {scan_id} failed: {e}") from e

    async def mark_scan_completed(self, scan_id: str) -> bool:
        """Move a processing scan to completed.

        Returns:
            True if this call completed the scan, False if it was already terminal
        """
        now = _now().isoformat()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE scans SET phase = 'completed', updated_at = ?, completed_at = ?
                    WHERE id = ? AND phase = 'processing'
                    """,
                    (now, now, scan_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("scan_complete_failed", scan_id=scan_id, error=str(e))
            raise DatabaseError(f"Failed to complete scan {scan_id}: {e}") from e

    async def commit_scan_batch(
        self, scan_id: str, expected_processed: int, update: ScanBatchUpdate
    ) -> None:
        """Persist one batch's actions and advance the scan, atomically.

        The scan row is only advanced when its processed_count still equals
        `expected_processed`; actions use INSERT OR IGNORE on
        (scan_id, message_id), so a replayed batch inserts nothing.

        Raises:
            ConflictError: If another writer already advanced the scan
            DatabaseError: If the transaction fails
        """
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    cursor = await db.execute(
                        """
                        SELECT processed_count, phase, category_counts_json, source_counts_json
                        FROM scans WHERE id = ?
                        """,
                        (scan_id,),
                    )
                    row = await cursor.fetchone()
                    if (
                        row is None
                        or row["processed_count"] != expected_processed
                        or row["phase"] != "processing"
                    ):
                        await db.rollback()
                        raise ConflictError(
                            f"Scan {scan_id} was advanced by another request "
                            f"(expected processed_count={expected_processed})",
                            resource_id=scan_id,
                        )

                    await db.executemany(
                        """
                        INSERT OR IGNORE INTO actions (
                            id, user_id, scan_id, message_id, thread_id,
                            sender_address, sender_name, subject_preview, email_date,
                            category, confidence, source, reasoning, action_type,
                            status, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', ?)
                        """,
                        [self._action_params(a) for a in update.actions],
                    )

                    categories = _merge_counts(
                        json.loads(row["category_counts_json"]), update.category_counts
                    )
                    sources = _merge_counts(
                        json.loads(row["source_counts_json"]), update.source_counts
                    )
                    cursor = await db.execute(
                        """
                        UPDATE scans SET
                            processed_count = ?,
                            category_counts_json = ?,
                            source_counts_json = ?,
                            skipped_count = skipped_count + ?,
                            llm_calls = llm_calls + ?,
                            llm_input_tokens = llm_input_tokens + ?,
                            llm_output_tokens = llm_output_tokens + ?,
                            llm_cost_usd = llm_cost_usd + ?,
                            updated_at = ?
                        WHERE id = ? AND processed_count = ?
                        """,
                        (
                            update.new_processed_count,
                            json.dumps(categories),
                            json.dumps(sources),
                            update.skipped_count,
                            update.llm_calls,
                            update.llm_input_tokens,
                            update.llm_output_tokens,
                            update.llm_cost_usd,
                            _now().isoformat(),
                            scan_id,
                            expected_processed,
                        ),
                    )
                    if cursor.rowcount == 0:
                        await db.rollback()
                        raise ConflictError(
                            f"Scan {scan_id} changed during batch commit", resource_id=scan_id
                        )
                    await db.commit()
                except aiosqlite.Error:
                    await db.rollback()
                    raise
        except aiosqlite.Error as e:
            logger.error("scan_batch_commit_failed", scan_id=scan_id, error=str(e))
            raise DatabaseError(f"Failed to commit batch for scan {scan_id}: {e}") from e

    def _row_to_scan(self, row: aiosqlite.Row) -> ScanRecord:
        return ScanRecord(
            id=row["id"],
            user_id=row["user_id"],
            query=row["query"],
            phase=row["phase"],
            message_ids=json.loads(row["message_ids_json"]),
            total_ids=row["total_ids"],
            processed_count=row["processed_count"],
            category_counts=json.loads(row["category_counts_json"]),
            source_counts=json.loads(row["source_counts_json"]),
            skipped_count=row["skipped_count"],
            llm_calls=row["llm_calls"],
            llm_input_tokens=row["llm_input_tokens"],
            llm_output_tokens=row["llm_output_tokens"],
            llm_cost_usd=row["llm_cost_usd"],
            error=row["error"],
            started_at=datetime.fromisoformat(row["started_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    # =========================================================================
    # Action Operations
    # =========================================================================

    def _action_params(self, action: ActionRecord) -> tuple[Any, ...]:
        subject = action.subject_preview
        if subject and len(subject) > MAX_SUBJECT_PREVIEW_LENGTH:
            subject = subject[:MAX_SUBJECT_PREVIEW_LENGTH]
        return (
            action.id,
            action.user_id,
            action.scan_id,
            action.message_id,
            action.thread_id,
            action.sender_address,
            action.sender_name,
            subject,
            action.email_date.isoformat() if action.email_date else None,
            action.category,
            action.confidence,
            action.source,
            action.reasoning,
            action.action_type,
            action.created_at.isoformat(),
        )

    async def get_actions(
        self, user_id: str, action_ids: list[str], status: ActionStatus | None = None
    ) -> list[ActionRecord]:
        """Load actions owned by `user_id`, reading ids in chunks.

        Returns records in the order of `action_ids`; unknown ids are omitted.
        """
        found: dict[str, ActionRecord] = {}
        try:
            async with self._db() as db:
                for chunk in _chunks(list(dict.fromkeys(action_ids)), self.read_chunk_size):
                    placeholders = ",".join("?" * len(chunk))
                    query = (
                        f"SELECT * FROM actions WHERE user_id = ? AND id IN ({placeholders})"
                    )
                    params: list[Any] = [user_id, *chunk]
                    if status is not None:
                        query += " AND status = ?"
                        params.append(status)
                    cursor = await db.execute(query, params)
                    for row in await cursor.fetchall():
                        found[row["id"]] = self._row_to_action(row)
        except aiosqlite.Error as e:
            logger.error("actions_get_failed", count=len(action_ids), error=str(e))
            raise DatabaseError(f"Failed to load actions: {e}") from e
        return [found[action_id] for action_id in action_ids if action_id in found]

    async def list_scan_actions(
        self, user_id: str, scan_id: str, status: ActionStatus | None = None
    ) -> list[ActionRecord]:
        """All actions of one scan, in insertion order."""
        query = "SELECT * FROM actions WHERE user_id = ? AND scan_id = ?"
        params: list[Any] = [user_id, scan_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY rowid"
        try:
            async with self._db() as db:
                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("scan_actions_list_failed", scan_id=scan_id, error=str(e))
            raise DatabaseError(f"Failed to list actions for scan {scan_id}: {e}") from e
        return [self._row_to_action(row) for row in rows]

    async def list_action_history(
        self,
        user_id: str,
        limit: int,
        offset: int = 0,
        status: ActionStatus | None = None,
        category: str | None = None,
    ) -> tuple[list[ActionRecord], int]:
        """One page of a user's actions across scans, newest first.

        Returns:
            (actions on this page, total matching actions)
        """
        where = "WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            where += " AND status = ?"
            params.append(status)
        if category is not None:
            where += " AND category = ?"
            params.append(category)
        try:
            async with self._db() as db:
                cursor = await db.execute(f"SELECT COUNT(*) FROM actions {where}", params)
                row = await cursor.fetchone()
                total = row[0] if row else 0
                cursor = await db.execute(
                    f"SELECT * FROM actions {where} "
                    "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                    [*params, limit, offset],
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("action_history_failed", error=str(e))
            raise DatabaseError(f"Failed to list action history: {e}") from e
        return [self._row_to_action(r) for r in rows], total

    async def claim_actions(
        self,
        batch_id: str,
        user_id: str,
        action_ids: list[str],
        stale_after_seconds: float = DEFAULT_STALE_CLAIM_SECONDS,
    ) -> tuple[ActionBatch | None, list[ActionRecord]]:
        """Create an action batch and move the caller's pending actions into it.

        Runs in one write transaction: actions are switched to `executing`
        under `batch_id` before any provider call is made, so two concurrent
        executions can never both own the same action. Actions left
        `executing` by a batch older than `stale_after_seconds` (a process
        that died mid-execution) may be claimed again.

        Returns:
            (batch, claimed actions in `action_ids` order); (None, []) and no
            batch row when nothing could be claimed
        """
        now = _now()
        stale_cutoff = (now - timedelta(seconds=stale_after_seconds)).isoformat()
        ids = list(dict.fromkeys(action_ids))
        claimed: dict[str, ActionRecord] = {}
        try:
            async with self._db() as db:
                await db.execute("BEGIN IMMEDIATE")
                try:
                    await db.execute(
                        """
                        INSERT INTO action_batches (id, user_id, scan_id, executed_at, total_actions)
                        VALUES (?, ?, NULL, ?, 0)
                        """,
                        (batch_id, user_id, now.isoformat()),
                    )
                    for chunk in _chunks(ids, self.read_chunk_size):
                        placeholders = ",".join("?" * len(chunk))
                        await db.execute(
                            f"""
                            UPDATE actions SET status = 'executing', batch_id = ?
                            WHERE user_id = ? AND id IN ({placeholders})
                              AND (
                                status = 'pending'
                                OR (
                                  status = 'executing' AND batch_id IN (
                                    SELECT id FROM action_batches WHERE executed_at < ?
                                  )
                                )
                              )
                            """,
                            [batch_id, user_id, *chunk, stale_cutoff],
                        )
                    cursor = await db.execute(
                        "SELECT * FROM actions WHERE batch_id = ? AND status = 'executing'",
                        (batch_id,),
                    )
                    for row in await cursor.fetchall():
                        claimed[row["id"]] = self._row_to_action(row)

                    if not claimed:
                        await db.rollback()
                        return None, []

                    scan_ids = {a.scan_id for a in claimed.values()}
                    scan_id = scan_ids.pop() if len(scan_ids) == 1 else None
                    await db.execute(
                        "UPDATE action_batches SET scan_id = ?, total_actions = ? WHERE id = ?",
                        (scan_id, len(claimed), batch_id),
                    )
                    await db.commit()
                except aiosqlite.Error:
                    await db.rollback()
                    raise
        except aiosqlite.Error as e:
            logger.error("actions_claim_failed", batch_id=batch_id, error=str(e))
            raise DatabaseError(f"Failed to claim actions for batch {batch_id}: {e}") from e

        batch = ActionBatch(
            id=batch_id,
            user_id=user_id,
            scan_id=scan_id,
            executed_at=now,
            total_actions=len(claimed),
        )
        return batch, [claimed[i] for i in ids if i in claimed]

    async def release_actions(self, batch_id: str, action_ids: list[str]) -> int:
        """Return actions this batch claimed but could not execute to pending."""
        if not action_ids:
            return 0
        released = 0
        try:
            async with self._db() as db:
                for chunk in _chunks(action_ids, self.read_chunk_size):
                    placeholders = ",".join("?" * len(chunk))
                    cursor = await db.execute(
                        f"""
                        UPDATE actions SET status = 'pending', batch_id = NULL
                        WHERE batch_id = ? AND status = 'executing' AND id IN ({placeholders})
                        """,
                        [batch_id, *chunk],
                    )
                    released += cursor.rowcount
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("actions_release_failed", batch_id=batch_id, error=str(e))
            raise DatabaseError(f"Failed to release actions of batch {batch_id}: {e}") from e
        return released

    async def get_action_batch(self, user_id: str, batch_id: str) -> ActionBatch | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM action_batches WHERE id = ? AND user_id = ?",
                    (batch_id, user_id),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("action_batch_get_failed", batch_id=batch_id, error=str(e))
            raise DatabaseError(f"Failed to get action batch {batch_id}: {e}") from e
        if row is None:
            return None
        return ActionBatch(
            id=row["id"],
            user_id=row["user_id"],
            scan_id=row["scan_id"],
            executed_at=datetime.fromisoformat(row["executed_at"]),
            total_actions=row["total_actions"],
            undone_at=_dt(row["undone_at"]),
        )

    async def mark_actions_executed(
        self, user_id: str, executed: list[tuple[str, str]], batch_id: str
    ) -> int:
        """Transition actions claimed by `batch_id` to executed.

        Args:
            user_id: Owner of the actions
            executed: (action_id, effective_action_type) pairs
            batch_id: Batch that claimed the actions

        Returns:
            Number of actions transitioned (rows no longer claimed by this batch are skipped)
        """
        if not executed:
            return 0
        now = _now().isoformat()
        updated = 0
        try:
            async with self._db() as db:
                for chunk in _chunks(executed, self.read_chunk_size):
                    for action_id, action_type in chunk:
                        cursor = await db.execute(
                            """
                            UPDATE actions
                            SET status = 'executed', executed_action_type = ?, executed_at = ?
                            WHERE id = ? AND user_id = ? AND batch_id = ?
                              AND status = 'executing'
                            """,
                            (action_type, now, action_id, user_id, batch_id),
                        )
                        updated += cursor.rowcount
                    await db.commit()
        except aiosqlite.Error as e:
            logger.error("actions_mark_executed_failed", batch_id=batch_id, error=str(e))
            raise DatabaseError(f"Failed to mark actions executed: {e}") from e
        return updated

    async def get_batch_actions(self, batch_id: str) -> list[ActionRecord]:
        """Actions still in the executed state for this batch."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM actions WHERE batch_id = ? AND status = 'executed' ORDER BY rowid",
                    (batch_id,),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("batch_actions_get_failed", batch_id=batch_id, error=str(e))
            raise DatabaseError(f"Failed to load actions for batch {batch_id}: {e}") from e
        return [self._row_to_action(row) for row in rows]

    async def revert_action(self, action_id: str, batch_id: str) -> bool:
        """Return an executed action to pending if it still belongs to `batch_id`.

        Returns:
            False if the action was re-touched since the batch executed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE actions
                    SET status = 'pending', executed_action_type = NULL,
                        batch_id = NULL, executed_at = NULL
                    WHERE id = ? AND batch_id = ? AND status = 'executed'
                    """,
                    (action_id, batch_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("action_revert_failed", action_id=action_id, error=str(e))
            raise DatabaseError(f"Failed to revert action {action_id}: {e}") from e

    async def mark_batch_undone(self, batch_id: str) -> bool:
        """Stamp undone_at once.

        Returns:
            False if the batch was already undone
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "UPDATE action_batches SET undone_at = ? WHERE id = ? AND undone_at IS NULL",
                    (_now().isoformat(), batch_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("batch_mark_undone_failed", batch_id=batch_id, error=str(e))
            raise DatabaseError(f"Failed to mark batch {batch_id} undone: {e}") from e

    async def reject_action(self, user_id: str, action_id: str) -> bool:
        """Transition a pending action to rejected.

        Returns:
            False if the action is not pending
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE actions SET status = 'rejected'
                    WHERE id = ? AND user_id = ? AND status = 'pending'
                    """,
                    (action_id, user_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("action_reject_failed", action_id=action_id, error=str(e))
            raise DatabaseError(f"Failed to reject action {action_id}: {e}") from e

    def _row_to_action(self, row: aiosqlite.Row) -> ActionRecord:
        return ActionRecord(
            id=row["id"],
            user_id=row["user_id"],
            scan_id=row["scan_id"],
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            sender_address=row["sender_address"],
            sender_name=row["sender_name"],
            subject_preview=row["subject_preview"],
            email_date=_dt(row["email_date"]),
            category=row["category"],
            confidence=row["confidence"],
            source=row["source"],
            reasoning=row["reasoning"],
            action_type=row["action_type"],
            executed_action_type=row["executed_action_type"],
            status=row["status"],
            batch_id=row["batch_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            executed_at=_dt(row["executed_at"]),
        )

    # =========================================================================
    # Audit Log & Feedback
    # =========================================================================

    async def log_actions(self, entries: list[dict[str, Any]]) -> None:
        """Write audit rows in one transaction.

        Each entry needs `user_id` and `event`; `action_id`, `batch_id` and
        `details` are optional.
        """
        if not entries:
            return
        try:
            async with self._db() as db:
                await db.executemany(
                    """
                    INSERT INTO action_log (user_id, action_id, batch_id, event, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            e["user_id"],
                            e.get("action_id"),
                            e.get("batch_id"),
                            e["event"],
                            json.dumps(e["details"]) if e.get("details") else None,
                        )
                        for e in entries
                    ],
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("action_log_write_failed", count=len(entries), error=str(e))
            raise DatabaseError(f"Failed to write action log: {e}") from e

    async def get_action_logs(self, action_id: str) -> list[dict[str, Any]]:
        """Audit rows for one action, oldest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM action_log WHERE action_id = ? ORDER BY id",
                    (action_id,),
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("action_log_read_failed", error=str(e))
            raise DatabaseError(f"Failed to read action log: {e}") from e
        return [
            {
                "event": row["event"],
                "batch_id": row["batch_id"],
                "details": json.loads(row["details_json"]) if row["details_json"] else None,
            }
            for row in rows
        ]

    async def save_feedback(
        self,
        user_id: str,
        action: ActionRecord,
        corrected_category: str | None,
        corrected_action: str | None,
        feedback: str | None,
    ) -> int:
        """Store a user's correction of a suggested action."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO user_feedback (
                        user_id, action_id, sender_address, original_category,
                        original_action, corrected_category, corrected_action,
                        feedback, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        user_id,
                        action.id,
                        action.sender_address,
                        action.category,
                        action.action_type,
                        corrected_category,
                        corrected_action,
                        feedback[:1000] if feedback else None,
                        _now().isoformat(),
                    ),
                )
                await db.commit()
                return cursor.lastrowid
        except aiosqlite.Error as e:
            logger.error("feedback_save_failed", action_id=action.id, error=str(e))
            raise DatabaseError(f"Failed to save feedback for action {action.id}: {e}") from e

    async def count_feedback(self, user_id: str) -> int:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT COUNT(*) FROM user_feedback WHERE user_id = ?", (user_id,)
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise DatabaseError(f"Failed to count feedback: {e}") from e
        return row[0] if row else 0

    # =========================================================================
    # Sender Cache Operations
    # =========================================================================

    async def get_sender_cache_entry(
        self, user_id: str, sender_address: str
    ) -> SenderCacheEntry | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM sender_cache WHERE user_id = ? AND sender_address = ?",
                    (user_id, sender_address),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("sender_cache_read_failed", error=str(e))
            raise DatabaseError(f"Failed to read sender cache: {e}") from e
        if row is None:
            return None
        return SenderCacheEntry(
            user_id=row["user_id"],
            sender_address=row["sender_address"],
            category=row["category"],
            confidence=row["confidence"],
            source=row["source"],
            cached_at=datetime.fromisoformat(row["cached_at"]),
        )

    async def upsert_sender_cache_entry(self, entry: SenderCacheEntry) -> None:
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sender_cache (
                        user_id, sender_address, category, confidence, source, cached_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, sender_address) DO UPDATE SET
                        category = excluded.category,
                        confidence = excluded.confidence,
                        source = excluded.source,
                        cached_at = excluded.cached_at
                    """,
                    (
                        entry.user_id,
                        entry.sender_address,
                        entry.category,
                        entry.confidence,
                        entry.source,
                        entry.cached_at.isoformat(),
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("sender_cache_write_failed", error=str(e))
            raise DatabaseError(f"Failed to write sender cache: {e}") from e

    async def delete_sender_cache_entry(self, user_id: str, sender_address: str) -> bool:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM sender_cache WHERE user_id = ? AND sender_address = ?",
                    (user_id, sender_address),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("sender_cache_delete_failed", error=str(e))
            raise DatabaseError(f"Failed to delete sender cache entry: {e}") from e

    # =========================================================================
    # Usage Tracking
    # =========================================================================

    async def record_usage(self, usage: UsageRecord) -> None:
        """Add `usage` to the user's totals for its period."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO usage_tracking (
                        user_id, period_start, scans_count, emails_processed, llm_calls,
                        llm_input_tokens, llm_output_tokens, llm_cost_usd
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, period_start) DO UPDATE SET
                        scans_count = scans_count + excluded.scans_count,
                        emails_processed = emails_processed + excluded.emails_processed,
                        llm_calls = llm_calls + excluded.llm_calls,
                        llm_input_tokens = llm_input_tokens + excluded.llm_input_tokens,
                        llm_output_tokens = llm_output_tokens + excluded.llm_output_tokens,
                        llm_cost_usd = llm_cost_usd + excluded.llm_cost_usd
                    """,
                    (
                        usage.user_id,
                        usage.period_start,
                        usage.scans_count,
                        usage.emails_processed,
                        usage.llm_calls,
                        usage.llm_input_tokens,
                        usage.llm_output_tokens,
                        usage.llm_cost_usd,
                    ),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("usage_record_failed", error=str(e))
            raise DatabaseError(f"Failed to record usage: {e}") from e

    async def get_usage(self, user_id: str, period_start: str) -> UsageRecord | None:
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM usage_tracking WHERE user_id = ? AND period_start = ?",
                    (user_id, period_start),
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("usage_read_failed", error=str(e))
            raise DatabaseError(f"Failed to read usage: {e}") from e
        if row is None:
            return None
        return UsageRecord(
            user_id=row["user_id"],
            period_start=row["period_start"],
            scans_count=row["scans_count"],
            emails_processed=row["emails_processed"],
            llm_calls=row["llm_calls"],
            llm_input_tokens=row["llm_input_tokens"],
            llm_output_tokens=row["llm_output_tokens"],
            llm_cost_usd=row["llm_cost_usd"],
        )
