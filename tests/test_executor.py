"""Tests for action execution, rejection and undo."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from sweeper.classifier.sender_cache import SqliteSenderCacheBackend, SenderReputationCache
from sweeper.core.errors import (
    ConflictError,
    MailboxAPIError,
    NotFoundError,
    RateLimitExceeded,
    UndoExpired,
    ValidationError,
)
from sweeper.db.store import ActionRecord, ScanBatchUpdate
from sweeper.engine.executor import ActionExecutor

CREATED = datetime(2026, 10, 17, 9, 0, tzinfo=UTC)


async def seed_actions(
    store,
    count: int,
    action_type: str = "archive",
    category: str = "newsletter",
    scan_id: str = "scan-1",
    user_id: str = "u1",
) -> list[str]:
    """Persist `count` pending actions through a real scan batch commit."""
    message_ids = [f"{scan_id}-msg-{i:03d}" for i in range(count)]
    await store.create_scan(scan_id, user_id, "in:inbox")
    await store.set_scan_listed(scan_id, message_ids)
    actions = [
        ActionRecord(
            id=f"{scan_id}-act-{i:03d}",
            user_id=user_id,
            scan_id=scan_id,
            message_id=message_id,
            sender_address=f"sender{i}@example.com",
            category=category,
            confidence=0.9,
            source="llm",
            action_type=action_type,
            created_at=CREATED,
        )
        for i, message_id in enumerate(message_ids)
    ]
    await store.commit_scan_batch(
        scan_id, 0, ScanBatchUpdate(new_processed_count=count, actions=actions)
    )
    return [a.id for a in actions]


@pytest.fixture
def cache(store) -> SenderReputationCache:
    return SenderReputationCache(SqliteSenderCacheBackend(store))


@pytest.fixture
def executor(fake_gateway, store, cache) -> ActionExecutor:
    return ActionExecutor(fake_gateway, store, cache, chunk_size=50, undo_window_seconds=300)


def _later(minutes: int):
    return lambda: datetime.now(UTC) + timedelta(minutes=minutes)


# ---------------------------------------------------------------------------
# Execute
# ---------------------------------------------------------------------------


class TestExecute:
    @pytest.mark.asyncio
    async def test_archive_is_chunked(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 75)

        result = await executor.execute("u1", ids)

        assert result.executed == 75
        assert result.failed == 0
        calls = fake_gateway.batch_modify_labels.await_args_list
        assert len(calls) == 2
        assert [len(c.args[0]) for c in calls] == [50, 25]
        assert calls[0].args[1:] == ([], ["INBOX"])

        batch = await store.get_action_batch("u1", result.batch_id)
        assert batch is not None
        assert batch.total_actions == 75
        assert batch.scan_id == "scan-1"
        assert await store.get_actions("u1", ids, status="pending") == []

    @pytest.mark.asyncio
    async def test_chunk_size_is_capped_by_gateway(self, fake_gateway, store, cache):
        fake_gateway.max_modify_batch = 10
        executor = ActionExecutor(fake_gateway, store, cache, chunk_size=50)
        assert executor.chunk_size == 10

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_abort_siblings(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 75)
        fake_gateway.batch_modify_labels.side_effect = [
            None,
            MailboxAPIError("Gmail unavailable", status_code=503),
        ]

        result = await executor.execute("u1", ids)

        assert result.executed == 50
        assert result.failed == 25
        assert {f.action_id for f in result.errors} == set(ids[50:])
        still_pending = await store.get_actions("u1", ids, status="pending")
        assert [a.id for a in still_pending] == ids[50:]

        logs = await store.get_action_logs(ids[60])
        assert logs[-1]["event"] == "execute_failed"
        assert "Gmail unavailable" in logs[-1]["details"]["error"]

    @pytest.mark.asyncio
    async def test_trash_is_per_message(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 3, action_type="move_to_trash")
        fake_gateway.trash_message.side_effect = [
            None,
            MailboxAPIError("not found", status_code=404),
            None,
        ]

        result = await executor.execute("u1", ids)

        assert fake_gateway.trash_message.await_count == 3
        assert result.executed == 2
        assert [f.action_id for f in result.errors] == [ids[1]]

    @pytest.mark.asyncio
    async def test_type_override_wins(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 2, action_type="move_to_trash")

        result = await executor.execute("u1", ids, type_override="mark_read")

        assert result.executed == 2
        fake_gateway.trash_message.assert_not_called()
        fake_gateway.batch_modify_labels.assert_awaited_once()
        assert fake_gateway.batch_modify_labels.await_args.args[2] == ["UNREAD"]
        executed = await store.get_batch_actions(result.batch_id)
        assert {a.executed_action_type for a in executed} == {"mark_read"}

    @pytest.mark.asyncio
    async def test_protected_categories_refuse_destructive_actions(
        self, executor, fake_gateway, store
    ):
        ids = await seed_actions(store, 2, action_type="keep", category="personal")

        refused = await executor.execute("u1", ids, type_override="move_to_trash")

        assert refused.executed == 0
        assert refused.failed == 2
        assert all("Refused" in f.error for f in refused.errors)
        fake_gateway.trash_message.assert_not_called()

        kept = await executor.execute("u1", ids)
        assert kept.executed == 2
        fake_gateway.batch_modify_labels.assert_not_called()

    @pytest.mark.asyncio
    async def test_unsubscribe_is_reported_per_item(self, executor, store):
        ids = await seed_actions(store, 2, action_type="unsubscribe")
        result = await executor.execute("u1", ids)
        assert result.failed == 2
        assert "not supported" in result.errors[0].error

    @pytest.mark.asyncio
    async def test_executed_actions_are_not_executed_twice(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 3)
        await executor.execute("u1", ids)

        with pytest.raises(NotFoundError):
            await executor.execute("u1", ids)
        assert fake_gateway.batch_modify_labels.await_count == 1

    @pytest.mark.asyncio
    async def test_rate_limit_fails_only_that_item(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 3, action_type="move_to_trash")
        fake_gateway.trash_message.side_effect = [
            None,
            RateLimitExceeded("Rate limit exceeded, would require 25.00s wait"),
            None,
        ]

        result = await executor.execute("u1", ids)

        assert fake_gateway.trash_message.await_count == 3
        assert result.executed == 2
        assert [f.action_id for f in result.errors] == [ids[1]]
        statuses = [a.status for a in await store.get_actions("u1", ids)]
        assert statuses == ["executed", "pending", "executed"]
        (log,) = await store.get_action_logs(ids[1])
        assert log["event"] == "execute_failed"

    @pytest.mark.asyncio
    async def test_concurrent_executions_apply_each_action_once(
        self, executor, fake_gateway, store
    ):
        ids = await seed_actions(store, 4, action_type="move_to_trash")

        outcomes = await asyncio.gather(
            executor.execute("u1", ids),
            executor.execute("u1", ids),
            return_exceptions=True,
        )

        results = [o for o in outcomes if not isinstance(o, BaseException)]
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        assert len(results) == 1
        assert [type(e) for e in errors] == [NotFoundError]
        assert results[0].executed == 4
        assert fake_gateway.trash_message.await_count == 4
        executed = await store.get_batch_actions(results[0].batch_id)
        assert sorted(a.id for a in executed) == sorted(ids)

    @pytest.mark.asyncio
    async def test_failed_items_can_be_retried(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 2, action_type="move_to_trash")
        fake_gateway.trash_message.side_effect = [
            MailboxAPIError("unavailable", status_code=503),
            None,
        ]
        first = await executor.execute("u1", ids)
        assert first.executed == 1

        fake_gateway.trash_message.side_effect = None
        retry = await executor.execute("u1", ids)

        assert retry.executed == 1
        assert retry.batch_id != first.batch_id
        (action,) = await store.get_batch_actions(retry.batch_id)
        assert action.id == ids[0]

    @pytest.mark.asyncio
    async def test_other_users_actions_are_not_found(self, executor, store):
        ids = await seed_actions(store, 2)
        with pytest.raises(NotFoundError):
            await executor.execute("u2", ids)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("action_ids", "override", "field"),
        [
            ([], None, "action_ids"),
            ([f"a{i}" for i in range(1001)], None, "action_ids"),
            (["a1"], "shred", "type_override"),
        ],
    )
    async def test_invalid_requests(self, executor, fake_gateway, action_ids, override, field):
        with pytest.raises(ValidationError) as exc_info:
            await executor.execute("u1", action_ids, type_override=override)
        assert exc_info.value.field == field
        fake_gateway.batch_modify_labels.assert_not_called()


# ---------------------------------------------------------------------------
# Reject
# ---------------------------------------------------------------------------


class TestReject:
    @pytest.mark.asyncio
    async def test_reject_with_correction_overrides_cache(self, executor, store, cache):
        (action_id,) = await seed_actions(store, 1)
        await cache.store("u1", "sender0@example.com", "newsletter", 0.9, "llm")

        await executor.reject(
            "u1", action_id, user_category="personal", user_action="keep", feedback="my friend"
        )

        (action,) = await store.get_actions("u1", [action_id])
        assert action.status == "rejected"
        assert await store.count_feedback("u1") == 1
        hit = await cache.lookup("u1", "sender0@example.com")
        assert hit is not None
        assert hit.category == "personal"
        assert hit.confidence == pytest.approx(1.0)
        assert hit.source == "user_override"
        assert (await store.get_action_logs(action_id))[-1]["event"] == "rejected"

    @pytest.mark.asyncio
    async def test_reject_without_correction_drops_cache_entry(self, executor, store, cache):
        (action_id,) = await seed_actions(store, 1)
        await cache.store("u1", "sender0@example.com", "newsletter", 0.9, "llm")

        await executor.reject("u1", action_id)

        assert await cache.lookup("u1", "sender0@example.com") is None

    @pytest.mark.asyncio
    async def test_reject_twice_conflicts(self, executor, store):
        (action_id,) = await seed_actions(store, 1)
        await executor.reject("u1", action_id)
        with pytest.raises(ConflictError):
            await executor.reject("u1", action_id)

    @pytest.mark.asyncio
    async def test_reject_unknown_action(self, executor):
        with pytest.raises(NotFoundError):
            await executor.reject("u1", "missing")

    @pytest.mark.asyncio
    async def test_reject_invalid_correction(self, executor, store):
        (action_id,) = await seed_actions(store, 1)
        with pytest.raises(ValidationError) as exc_info:
            await executor.reject("u1", action_id, user_category="junk")
        assert exc_info.value.field == "user_category"
        with pytest.raises(ValidationError):
            await executor.reject("u1", action_id, user_action="shred")


# ---------------------------------------------------------------------------
# Undo
# ---------------------------------------------------------------------------


class TestUndo:
    @pytest.mark.asyncio
    async def test_undo_restores_labels_and_pending_status(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 75)
        executed = await executor.execute("u1", ids)
        fake_gateway.reset_mock()

        result = await executor.undo("u1", executed.batch_id)

        assert result.undone == 75
        assert result.failed == 0
        calls = fake_gateway.batch_modify_labels.await_args_list
        assert [len(c.args[0]) for c in calls] == [50, 25]
        assert calls[0].args[1:] == (["INBOX"], [])
        assert len(await store.get_actions("u1", ids, status="pending")) == 75
        assert (await store.get_action_logs(ids[0]))[-1]["event"] == "undone"

    @pytest.mark.asyncio
    async def test_undo_trash_untrashes(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 2, action_type="move_to_trash")
        executed = await executor.execute("u1", ids)

        result = await executor.undo("u1", executed.batch_id)

        assert result.undone == 2
        assert fake_gateway.untrash_message.await_count == 2

    @pytest.mark.asyncio
    async def test_undo_only_reverts_what_executed(self, executor, fake_gateway, store):
        ids = await seed_actions(store, 3, action_type="move_to_trash")
        fake_gateway.trash_message.side_effect = [None, MailboxAPIError("boom", 500), None]
        executed = await executor.execute("u1", ids)

        result = await executor.undo("u1", executed.batch_id)

        assert result.undone == 2
        assert fake_gateway.untrash_message.await_count == 2

    @pytest.mark.asyncio
    async def test_undo_after_window_makes_no_provider_calls(
        self, fake_gateway, store, cache
    ):
        ids = await seed_actions(store, 3)
        executed = await ActionExecutor(fake_gateway, store, cache).execute("u1", ids)
        fake_gateway.reset_mock()

        late = ActionExecutor(fake_gateway, store, cache, undo_window_seconds=300, clock=_later(6))
        with pytest.raises(UndoExpired):
            await late.undo("u1", executed.batch_id)

        fake_gateway.batch_modify_labels.assert_not_called()
        fake_gateway.untrash_message.assert_not_called()
        assert await store.get_actions("u1", ids, status="pending") == []

    @pytest.mark.asyncio
    async def test_undo_within_window(self, fake_gateway, store, cache):
        ids = await seed_actions(store, 1)
        executed = await ActionExecutor(fake_gateway, store, cache).execute("u1", ids)

        early = ActionExecutor(fake_gateway, store, cache, clock=_later(4))
        assert (await early.undo("u1", executed.batch_id)).undone == 1

    @pytest.mark.asyncio
    async def test_undo_twice_conflicts(self, executor, store):
        ids = await seed_actions(store, 2)
        executed = await executor.execute("u1", ids)
        await executor.undo("u1", executed.batch_id)

        with pytest.raises(ConflictError):
            await executor.undo("u1", executed.batch_id)

    @pytest.mark.asyncio
    async def test_undo_unknown_batch(self, executor, store):
        ids = await seed_actions(store, 1)
        executed = await executor.execute("u1", ids)
        with pytest.raises(NotFoundError):
            await executor.undo("u1", "missing")
        with pytest.raises(NotFoundError):
            await executor.undo("u2", executed.batch_id)
