"""Scan orchestrator: a resumable, batch-at-a-time scan state machine.

A scan moves through:

    listing -> processing -> completed
        \\            \\
         -> failed     -> failed

`start_scan` lists message ids once and persists them on the scan record.
The caller then drives `process_next_batch(offset)` repeatedly, passing the
`next_offset` from the previous response. Each batch call:

1. Fetches metadata for the slice [offset, offset + batch_size)
2. Extracts EmailRecords (messages without a From header are skipped)
3. Classifies them and plans actions
4. Persists the ActionRecords and advances the scan in one transaction,
   conditional on processed_count still being `offset`

Replaying an offset that was already processed is a no-op returning the
current state; two concurrent calls for the same offset produce one set of
actions. A provider or database failure inside a batch marks the scan
failed; the caller starts a new scan to recover.

Usage:
    from sweeper.engine.scan import ScanOrchestrator

    orchestrator = ScanOrchestrator(gateway, engine, store)
    started = await orchestrator.start_scan("user-1", "in:inbox", max_items=500)
    progress = await orchestrator.process_next_batch("user-1", started.scan_id, 0)
    while progress.next_offset is not None:
        progress = await orchestrator.process_next_batch(
            "user-1", started.scan_id, progress.next_offset
        )
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sweeper.core.errors import (
    ConflictError,
    DatabaseError,
    NotFoundError,
    ProviderUnavailable,
    ValidationError,
)
from sweeper.core.logging import get_logger, set_correlation_id
from sweeper.db.store import ActionRecord, ScanBatchUpdate, ScanRecord, UsageRecord
from sweeper.mailbox.extractor import EmailRecord, MetadataExtractor

if TYPE_CHECKING:
    from sweeper.classifier.categories import CategorizationResult
    from sweeper.classifier.engine import CategorizationEngine
    from sweeper.db.store import DatabaseStore
    from sweeper.mailbox.gateway import MailboxGateway

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 30
DEFAULT_MAX_ITEMS_LIMIT = 5000
MAX_QUERY_LENGTH = 500


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class StartedScan:
    """Result of start_scan."""

    scan_id: str
    phase: str
    total_ids: int
    next_offset: int | None


@dataclass
class BatchProgress:
    """Scan state after a batch call (or a no-op replay)."""

    scan_id: str
    phase: str
    processed_count: int
    total_ids: int
    next_offset: int | None
    skipped_count: int = 0
    category_counts: dict[str, int] = field(default_factory=dict)
    error: str | None = None

    @classmethod
    def from_scan(cls, scan: ScanRecord) -> BatchProgress:
        return cls(
            scan_id=scan.id,
            phase=scan.phase,
            processed_count=scan.processed_count,
            total_ids=scan.total_ids,
            next_offset=None if scan.is_terminal else scan.processed_count,
            skipped_count=scan.skipped_count,
            category_counts=dict(scan.category_counts),
            error=scan.error,
        )


def usage_period(now: datetime) -> str:
    """Monthly usage bucket key, e.g. '2026-10-01'."""
    return now.strftime("%Y-%m-01")


def _action_record(
    user_id: str,
    scan_id: str,
    record: EmailRecord,
    result: CategorizationResult,
    now: datetime,
) -> ActionRecord:
    primary = result.primary_action
    return ActionRecord(
        id=str(uuid.uuid4()),
        user_id=user_id,
        scan_id=scan_id,
        message_id=record.id,
        thread_id=record.thread_id,
        sender_address=record.sender.address,
        sender_name=record.sender.name or None,
        subject_preview=record.subject,
        email_date=record.date,
        category=result.category,
        confidence=result.confidence,
        source=result.source,
        reasoning=result.reasoning or None,
        action_type=primary.type if primary else "keep",
        created_at=now,
    )


class ScanOrchestrator:
    """Drives scans from listing through batch processing to completion.

    Attributes:
        batch_size: Messages per process_next_batch call
        max_items_limit: Upper bound accepted for start_scan's max_items
    """

    def __init__(
        self,
        gateway: MailboxGateway,
        engine: CategorizationEngine,
        store: DatabaseStore,
        extractor: MetadataExtractor | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_items_limit: int = DEFAULT_MAX_ITEMS_LIMIT,
        clock: Callable[[], datetime] | None = None,
    ):
        self._gateway = gateway
        self._engine = engine
        self._store = store
        self._extractor = extractor or MetadataExtractor()
        self.batch_size = batch_size
        self.max_items_limit = max_items_limit
        self._clock = clock or (lambda: datetime.now(UTC))

    # -------------------------------------------------------------------------
    # Start
    # -------------------------------------------------------------------------

    async def start_scan(self, user_id: str, query: str, max_items: int) -> StartedScan:
        """Create a scan and list its message ids.

        Raises:
            ValidationError: If query or max_items is out of range
            ProviderUnavailable: If listing fails (the scan is marked failed)
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("query must not be empty", field="query")
        if len(query) > MAX_QUERY_LENGTH:
            raise ValidationError(
                f"query must be at most {MAX_QUERY_LENGTH} characters", field="query"
            )
        if not 1 <= max_items <= self.max_items_limit:
            raise ValidationError(
                f"max_items must be between 1 and {self.max_items_limit}, got {max_items}",
                field="max_items",
            )

        scan_id = str(uuid.uuid4())
        set_correlation_id(scan_id)
        await self._store.create_scan(scan_id, user_id, query)
        logger.info("scan_started", scan_id=scan_id[:8], max_items=max_items)

        try:
            ids = await self._gateway.list_message_ids(query, max_items)
        except ProviderUnavailable as e:
            logger.error("scan_listing_failed", scan_id=scan_id[:8], error=str(e))
            await self._store.mark_scan_failed(scan_id, f"Listing failed: {e}")
            raise

        # Pages can overlap when new mail arrives mid-listing
        ids = list(dict.fromkeys(ids))[:max_items]
        phase = await self._store.set_scan_listed(scan_id, ids)
        if phase == "completed":
            await self._record_usage(user_id, scan_id)

        logger.info("scan_listed", scan_id=scan_id[:8], total_ids=len(ids), phase=phase)
        return StartedScan(
            scan_id=scan_id,
            phase=phase,
            total_ids=len(ids),
            next_offset=0 if phase == "processing" else None,
        )

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    async def get_progress(self, user_id: str, scan_id: str) -> BatchProgress:
        """Current state of a scan.

        Raises:
            NotFoundError: If the scan does not exist or belongs to another user
        """
        return BatchProgress.from_scan(await self._load_scan(user_id, scan_id))

    async def process_next_batch(self, user_id: str, scan_id: str, offset: int) -> BatchProgress:
        """Process the batch starting at `offset`.

        Raises:
            NotFoundError: If the scan does not exist or belongs to another user
            ValidationError: If offset is negative or skips unprocessed messages
        """
        set_correlation_id(scan_id)
        if offset < 0:
            raise ValidationError(f"offset must be >= 0, got {offset}", field="offset")

        scan = await self._load_scan(user_id, scan_id)
        if scan.is_terminal or offset < scan.processed_count:
            logger.debug(
                "scan_batch_replayed",
                scan_id=scan_id[:8],
                offset=offset,
                processed_count=scan.processed_count,
                phase=scan.phase,
            )
            return BatchProgress.from_scan(scan)
        if offset > scan.processed_count:
            raise ValidationError(
                f"offset {offset} is ahead of processed_count {scan.processed_count}; "
                "batches must be processed in order",
                field="offset",
            )

        ids = scan.message_ids[offset : offset + self.batch_size]
        if not ids:
            await self._complete(user_id, scan_id)
            return BatchProgress.from_scan(await self._load_scan(user_id, scan_id))

        try:
            update = await self._run_batch(user_id, scan_id, offset, ids)
            await self._store.commit_scan_batch(scan_id, offset, update)
        except ConflictError:
            logger.info("scan_batch_conflict", scan_id=scan_id[:8], offset=offset)
            return BatchProgress.from_scan(await self._load_scan(user_id, scan_id))
        except (ProviderUnavailable, DatabaseError) as e:
            logger.error(
                "scan_batch_failed",
                scan_id=scan_id[:8],
                offset=offset,
                error_type=type(e).__name__,
                error=str(e)[:200],
            )
            await self._store.mark_scan_failed(scan_id, str(e))
            return BatchProgress.from_scan(await self._load_scan(user_id, scan_id))

        logger.info(
            "scan_batch_complete",
            scan_id=scan_id[:8],
            offset=offset,
            processed_count=update.new_processed_count,
            total_ids=scan.total_ids,
            actions=len(update.actions),
            skipped=update.skipped_count,
            llm_calls=update.llm_calls,
        )

        if update.new_processed_count >= scan.total_ids:
            await self._complete(user_id, scan_id)
        return BatchProgress.from_scan(await self._load_scan(user_id, scan_id))

    async def _run_batch(
        self, user_id: str, scan_id: str, offset: int, ids: list[str]
    ) -> ScanBatchUpdate:
        """Fetch, extract, classify and plan one slice. No persistence."""
        wanted = set(ids)
        raw_messages = await self._gateway.batch_get_messages(ids)

        records: list[EmailRecord] = []
        seen: set[str] = set()
        for raw in raw_messages:
            record = self._extractor.extract(raw)
            if record is None or record.id not in wanted or record.id in seen:
                continue
            seen.add(record.id)
            records.append(record)

        results, stats = await self._engine.classify(user_id, records)
        now = self._clock()
        actions = [
            _action_record(user_id, scan_id, record, result, now)
            for record, result in zip(records, results, strict=True)
        ]

        return ScanBatchUpdate(
            new_processed_count=offset + len(ids),
            actions=actions,
            category_counts=stats.category_counts,
            source_counts=stats.source_counts,
            skipped_count=len(ids) - len(records),
            llm_calls=stats.llm_calls,
            llm_input_tokens=stats.llm_input_tokens,
            llm_output_tokens=stats.llm_output_tokens,
            llm_cost_usd=stats.llm_cost_usd,
        )

    # -------------------------------------------------------------------------
    # Completion & usage
    # -------------------------------------------------------------------------

    async def _complete(self, user_id: str, scan_id: str) -> None:
        if await self._store.mark_scan_completed(scan_id):
            logger.info("scan_completed", scan_id=scan_id[:8])
            await self._record_usage(user_id, scan_id)

    async def _record_usage(self, user_id: str, scan_id: str) -> None:
        """Add a completed scan to the user's monthly usage. Failures are logged only."""
        try:
            scan = await self._load_scan(user_id, scan_id)
            await self._store.record_usage(
                UsageRecord(
                    user_id=user_id,
                    period_start=usage_period(self._clock()),
                    scans_count=1,
                    emails_processed=scan.processed_count - scan.skipped_count,
                    llm_calls=scan.llm_calls,
                    llm_input_tokens=scan.llm_input_tokens,
                    llm_output_tokens=scan.llm_output_tokens,
                    llm_cost_usd=scan.llm_cost_usd,
                )
            )
        except (DatabaseError, NotFoundError) as e:
            logger.warning("usage_record_failed", scan_id=scan_id[:8], error=str(e))

    async def _load_scan(self, user_id: str, scan_id: str) -> ScanRecord:
        scan = await self._store.get_scan(user_id, scan_id)
        if scan is None:
            raise NotFoundError(f"Scan {scan_id} not found", resource="scan", resource_id=scan_id)
        return scan
