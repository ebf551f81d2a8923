"""Tests for the scan orchestrator state machine."""

import asyncio
from datetime import UTC, datetime

import pytest

from sweeper.classifier.engine import CategorizationEngine
from sweeper.classifier.heuristics import HeuristicClassifier
from sweeper.classifier.sender_cache import InMemorySenderCacheBackend, SenderReputationCache
from sweeper.core.errors import (
    MailboxAPIError,
    NotFoundError,
    RateLimitExceeded,
    ValidationError,
)
from sweeper.engine.scan import ScanOrchestrator, usage_period

from conftest import FakeProvider, raw_message

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider(category="newsletter", confidence=0.9)


@pytest.fixture
def orchestrator(fake_gateway, store, provider) -> ScanOrchestrator:
    engine = CategorizationEngine(
        SenderReputationCache(InMemorySenderCacheBackend(), clock=lambda: NOW),
        primary=provider,
        heuristics=HeuristicClassifier(),
        max_attempts=1,
        retry_base_delay=0.0,
        clock=lambda: NOW,
    )
    return ScanOrchestrator(
        fake_gateway, engine, store, batch_size=30, max_items_limit=5000, clock=lambda: NOW
    )


def _ids(count: int) -> list[str]:
    return [f"msg-{i:04d}" for i in range(count)]


# ---------------------------------------------------------------------------
# start_scan
# ---------------------------------------------------------------------------


class TestStartScan:
    @pytest.mark.asyncio
    async def test_lists_and_persists_ids(self, orchestrator, fake_gateway, store):
        fake_gateway.list_message_ids.return_value = _ids(5)

        started = await orchestrator.start_scan("u1", "  in:inbox  ", 100)

        fake_gateway.list_message_ids.assert_awaited_once_with("in:inbox", 100)
        assert started.phase == "processing"
        assert started.total_ids == 5
        assert started.next_offset == 0
        scan = await store.get_scan("u1", started.scan_id)
        assert scan is not None
        assert scan.message_ids == _ids(5)

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_dropped_and_capped(self, orchestrator, fake_gateway):
        fake_gateway.list_message_ids.return_value = ["a", "b", "a", "c", "d"]
        started = await orchestrator.start_scan("u1", "in:inbox", 3)
        assert started.total_ids == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("query", "max_items", "field"),
        [
            ("", 10, "query"),
            ("   ", 10, "query"),
            ("x" * 501, 10, "query"),
            ("in:inbox", 0, "max_items"),
            ("in:inbox", 5001, "max_items"),
        ],
    )
    async def test_invalid_input_has_no_side_effects(
        self, orchestrator, fake_gateway, store, query, max_items, field
    ):
        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.start_scan("u1", query, max_items)
        assert exc_info.value.field == field
        fake_gateway.list_message_ids.assert_not_called()
        assert await store.list_scans("u1") == []

    @pytest.mark.asyncio
    async def test_empty_listing_completes_immediately(self, orchestrator, store):
        started = await orchestrator.start_scan("u1", "in:inbox", 100)

        assert started.phase == "completed"
        assert started.next_offset is None
        usage = await store.get_usage("u1", "2026-10-01")
        assert usage is not None
        assert usage.scans_count == 1
        assert usage.emails_processed == 0

    @pytest.mark.asyncio
    async def test_listing_failure_marks_scan_failed(self, orchestrator, fake_gateway, store):
        fake_gateway.list_message_ids.side_effect = MailboxAPIError("down", status_code=503)

        with pytest.raises(MailboxAPIError):
            await orchestrator.start_scan("u1", "in:inbox", 100)

        (scan,) = await store.list_scans("u1")
        assert scan.phase == "failed"
        assert "down" in (scan.error or "")


# ---------------------------------------------------------------------------
# process_next_batch
# ---------------------------------------------------------------------------


class TestProcessNextBatch:
    @pytest.mark.asyncio
    async def test_full_scan_in_batches(self, orchestrator, fake_gateway, store, provider):
        fake_gateway.list_message_ids.return_value = _ids(120)
        started = await orchestrator.start_scan("u1", "in:inbox", 500)

        seen = []
        offset = started.next_offset
        while offset is not None:
            progress = await orchestrator.process_next_batch("u1", started.scan_id, offset)
            seen.append((progress.processed_count, progress.phase))
            offset = progress.next_offset

        assert seen == [
            (30, "processing"),
            (60, "processing"),
            (90, "processing"),
            (120, "completed"),
        ]
        assert fake_gateway.batch_get_messages.await_count == 4
        assert progress.category_counts == {"newsletter": 120}

        actions = await store.list_scan_actions("u1", started.scan_id)
        assert len(actions) == 120
        assert {a.action_type for a in actions} == {"move_to_trash"}
        assert all(a.source == "llm" for a in actions)

        scan = await store.get_scan("u1", started.scan_id)
        assert scan is not None
        assert scan.llm_calls == len(provider.calls)
        assert scan.llm_input_tokens == 100 * 120

        usage = await store.get_usage("u1", usage_period(NOW))
        assert usage is not None
        assert usage.scans_count == 1
        assert usage.emails_processed == 120
        assert usage.llm_calls == scan.llm_calls

    @pytest.mark.asyncio
    async def test_replayed_offset_is_a_noop(self, orchestrator, fake_gateway, store):
        fake_gateway.list_message_ids.return_value = _ids(60)
        started = await orchestrator.start_scan("u1", "in:inbox", 500)

        first = await orchestrator.process_next_batch("u1", started.scan_id, 0)
        replay = await orchestrator.process_next_batch("u1", started.scan_id, 0)

        assert replay == first
        assert fake_gateway.batch_get_messages.await_count == 1
        assert len(await store.list_scan_actions("u1", started.scan_id)) == 30

    @pytest.mark.asyncio
    async def test_concurrent_calls_produce_one_set_of_actions(
        self, orchestrator, fake_gateway, store
    ):
        fake_gateway.list_message_ids.return_value = _ids(60)
        started = await orchestrator.start_scan("u1", "in:inbox", 500)

        results = await asyncio.gather(
            orchestrator.process_next_batch("u1", started.scan_id, 0),
            orchestrator.process_next_batch("u1", started.scan_id, 0),
        )

        assert {r.processed_count for r in results} == {30}
        assert len(await store.list_scan_actions("u1", started.scan_id)) == 30

    @pytest.mark.asyncio
    async def test_offset_ahead_of_progress_is_rejected(self, orchestrator, fake_gateway):
        fake_gateway.list_message_ids.return_value = _ids(90)
        started = await orchestrator.start_scan("u1", "in:inbox", 500)

        with pytest.raises(ValidationError) as exc_info:
            await orchestrator.process_next_batch("u1", started.scan_id, 30)
        assert exc_info.value.field == "offset"

        with pytest.raises(ValidationError):
            await orchestrator.process_next_batch("u1", started.scan_id, -1)

    @pytest.mark.asyncio
    async def test_unknown_scan_and_other_users_scan(self, orchestrator, fake_gateway):
        fake_gateway.list_message_ids.return_value = _ids(3)
        started = await orchestrator.start_scan("u1", "in:inbox", 500)

        with pytest.raises(NotFoundError):
            await orchestrator.process_next_batch("u1", "missing", 0)
        with pytest.raises(NotFoundError):
            await orchestrator.process_next_batch("u2", started.scan_id, 0)
        with pytest.raises(NotFoundError):
            await orchestrator.get_progress("u2", started.scan_id)

    @pytest.mark.asyncio
    async def test_unreadable_and_missing_messages_are_skipped(
        self, orchestrator, fake_gateway, store
    ):
        fake_gateway.list_message_ids.return_value = ["a", "b", "c", "d"]

        def serve(ids):
            no_from = raw_message(msg_id="b")
            no_from["payload"]["headers"] = [
                h for h in no_from["payload"]["headers"] if h["name"] != "From"
            ]
            # "c" is missing; "x" was never requested
            return [
                raw_message(msg_id="a", sender="A <a@example.org>"),
                no_from,
                raw_message(msg_id="d", sender="D <d@example.org>"),
                raw_message(msg_id="x", sender="X <x@example.org>"),
            ]

        fake_gateway.batch_get_messages.side_effect = serve
        started = await orchestrator.start_scan("u1", "in:inbox", 500)

        progress = await orchestrator.process_next_batch("u1", started.scan_id, 0)

        assert progress.phase == "completed"
        assert progress.processed_count == 4
        assert progress.skipped_count == 2
        actions = await store.list_scan_actions("u1", started.scan_id)
        assert [a.message_id for a in actions] == ["a", "d"]

    @pytest.mark.asyncio
    async def test_provider_failure_marks_scan_failed(self, orchestrator, fake_gateway):
        fake_gateway.list_message_ids.return_value = _ids(60)
        started = await orchestrator.start_scan("u1", "in:inbox", 500)
        fake_gateway.batch_get_messages.side_effect = MailboxAPIError(
            "Gmail unavailable", status_code=503
        )

        progress = await orchestrator.process_next_batch("u1", started.scan_id, 0)

        assert progress.phase == "failed"
        assert progress.next_offset is None
        assert "Gmail unavailable" in (progress.error or "")

        again = await orchestrator.process_next_batch("u1", started.scan_id, 0)
        assert again.phase == "failed"
        assert fake_gateway.batch_get_messages.await_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_exhaustion_marks_scan_failed(
        self, orchestrator, fake_gateway, store
    ):
        fake_gateway.list_message_ids.return_value = _ids(60)
        started = await orchestrator.start_scan("u1", "in:inbox", 500)
        fake_gateway.batch_get_messages.side_effect = RateLimitExceeded(
            "Rate limit exceeded, would require 25.00s wait"
        )

        progress = await orchestrator.process_next_batch("u1", started.scan_id, 0)

        assert progress.phase == "failed"
        assert "would require" in (progress.error or "")
        assert await store.list_scan_actions("u1", started.scan_id) == []

    @pytest.mark.asyncio
    async def test_llm_outage_does_not_fail_the_scan(self, fake_gateway, store):
        # No LLM provider configured at all
        engine = CategorizationEngine(SenderReputationCache(InMemorySenderCacheBackend()))
        orchestrator = ScanOrchestrator(fake_gateway, engine, store, batch_size=30)
        fake_gateway.list_message_ids.return_value = _ids(10)
        started = await orchestrator.start_scan("u1", "in:inbox", 500)

        progress = await orchestrator.process_next_batch("u1", started.scan_id, 0)

        assert progress.phase == "completed"
        assert progress.category_counts == {"unknown": 10}
        actions = await store.list_scan_actions("u1", started.scan_id)
        assert {a.action_type for a in actions} == {"keep"}


def test_usage_period():
    assert usage_period(datetime(2026, 2, 28, 23, 59, tzinfo=UTC)) == "2026-02-01"
