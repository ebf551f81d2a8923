"""Action executor: applies approved actions to the mailbox, with undo.

Execution groups pending actions by effective type (a caller override wins
over the suggested type) and issues one provider call per chunk for label
changes, one per message for trash:

    archive        -> remove INBOX   (bulk, chunked)
    mark_read      -> remove UNREAD  (bulk, chunked)
    move_to_trash  -> trash          (per message)
    keep           -> no provider call
    unsubscribe    -> not supported, reported per item

Failures are scoped to their chunk or message and never abort sibling work.
The requested actions are first claimed (`executing`) under a new batch id,
so concurrent calls never apply the same action twice. Succeeded actions
become `executed`; failed actions return to `pending` so they can be
retried. Every outcome gets an audit log row.

Destructive types (archive, move_to_trash) are refused per item for the
protected categories personal and important, whatever the caller asks for.

Undo reverses one batch within the undo window (default five minutes):

    archive        -> add INBOX      (bulk)
    mark_read      -> add UNREAD     (bulk)
    move_to_trash  -> untrash        (per message)

Only actions still executed under that batch are reverted; a batch can be
undone once.

Usage:
    from sweeper.engine.executor import ActionExecutor

    executor = ActionExecutor(gateway, store, cache)
    result = await executor.execute("user-1", action_ids)
    await executor.undo("user-1", result.batch_id)
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sweeper.classifier.categories import (
    DESTRUCTIVE_ACTIONS,
    VALID_ACTION_TYPES,
    VALID_CATEGORIES,
    is_protected,
)
from sweeper.core.errors import (
    ConflictError,
    NotFoundError,
    ProviderUnavailable,
    UndoExpired,
    ValidationError,
)
from sweeper.core.logging import get_logger, set_correlation_id
from sweeper.db.store import ActionRecord

if TYPE_CHECKING:
    from sweeper.classifier.sender_cache import SenderReputationCache
    from sweeper.db.store import DatabaseStore
    from sweeper.mailbox.gateway import MailboxGateway

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 50
DEFAULT_UNDO_WINDOW_SECONDS = 300
DEFAULT_MAX_IDS_PER_REQUEST = 1000

INBOX_LABEL = "INBOX"
UNREAD_LABEL = "UNREAD"

# Label-only actions: type -> (labels to add, labels to remove)
LABEL_CHANGES: dict[str, tuple[list[str], list[str]]] = {
    "archive": ([], [INBOX_LABEL]),
    "mark_read": ([], [UNREAD_LABEL]),
}

# Inverse label changes applied on undo
UNDO_LABEL_CHANGES: dict[str, tuple[list[str], list[str]]] = {
    "archive": ([INBOX_LABEL], []),
    "mark_read": ([UNREAD_LABEL], []),
}


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ActionFailure:
    """One action that could not be applied."""

    action_id: str
    error: str


@dataclass
class ExecutionResult:
    """Outcome of one execute call. Partial failure is a normal outcome."""

    batch_id: str
    executed: int = 0
    failed: int = 0
    errors: list[ActionFailure] = field(default_factory=list)


@dataclass
class UndoResult:
    """Outcome of undoing one batch."""

    batch_id: str
    undone: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[ActionFailure] = field(default_factory=list)


@dataclass
class _Outcome:
    """Per-run bookkeeping shared by execute and undo."""

    succeeded: list[ActionRecord] = field(default_factory=list)
    failed: list[ActionFailure] = field(default_factory=list)

    def fail(self, actions: list[ActionRecord], error: str) -> None:
        self.failed.extend(ActionFailure(a.id, error) for a in actions)


def _chunks(items: list[ActionRecord], size: int) -> list[list[ActionRecord]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class ActionExecutor:
    """Executes, rejects and undoes actions for one mailbox gateway.

    Attributes:
        chunk_size: Messages per bulk label request (capped by the gateway)
        undo_window: How long after execution a batch can be undone
    """

    def __init__(
        self,
        gateway: MailboxGateway,
        store: DatabaseStore,
        cache: SenderReputationCache,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        undo_window_seconds: int = DEFAULT_UNDO_WINDOW_SECONDS,
        max_ids_per_request: int = DEFAULT_MAX_IDS_PER_REQUEST,
        clock: Callable[[], datetime] | None = None,
    ):
        self._gateway = gateway
        self._store = store
        self._cache = cache
        self.chunk_size = max(1, min(chunk_size, gateway.max_modify_batch))
        self.undo_window = timedelta(seconds=undo_window_seconds)
        self.max_ids_per_request = max_ids_per_request
        self._clock = clock or (lambda: datetime.now(UTC))

    # -------------------------------------------------------------------------
    # Execute
    # -------------------------------------------------------------------------

    async def execute(
        self,
        user_id: str,
        action_ids: list[str],
        type_override: str | None = None,
    ) -> ExecutionResult:
        """Apply pending actions and group them under a new batch.

        Args:
            user_id: Owner of the actions
            action_ids: Actions to execute; non-pending ids are ignored
            type_override: Apply this action type instead of each suggestion

        Raises:
            ValidationError: If the request is malformed
            NotFoundError: If none of the ids is a pending action of this user
        """
        if not action_ids:
            raise ValidationError("action_ids must not be empty", field="action_ids")
        if len(action_ids) > self.max_ids_per_request:
            raise ValidationError(
                f"At most {self.max_ids_per_request} action ids per request, "
                f"got {len(action_ids)}",
                field="action_ids",
            )
        if type_override is not None and type_override not in VALID_ACTION_TYPES:
            raise ValidationError(
                f"Unknown action type '{type_override}'. "
                f"Valid types: {', '.join(sorted(VALID_ACTION_TYPES))}",
                field="type_override",
            )

        batch_id = str(uuid.uuid4())
        set_correlation_id(batch_id)
        # Claimed before any provider call; a concurrent execute claims nothing
        _, actions = await self._store.claim_actions(batch_id, user_id, action_ids)
        if not actions:
            raise NotFoundError(
                "No pending actions found for the given ids", resource="action"
            )

        groups: dict[str, list[ActionRecord]] = {}
        outcome = _Outcome()
        for action in actions:
            effective = type_override or action.action_type
            if effective in DESTRUCTIVE_ACTIONS and is_protected(action.category):
                outcome.fail(
                    [action],
                    f"Refused: '{effective}' is not allowed for {action.category} email",
                )
                continue
            groups.setdefault(effective, []).append(action)

        effective_types: dict[str, str] = {}
        for action_type, group in groups.items():
            for action in group:
                effective_types[action.id] = action_type
            await self._apply(action_type, group, outcome, undo=False)

        await self._store.release_actions(batch_id, [f.action_id for f in outcome.failed])
        executed = await self._store.mark_actions_executed(
            user_id, [(a.id, effective_types[a.id]) for a in outcome.succeeded], batch_id
        )
        await self._audit(
            user_id,
            batch_id,
            outcome,
            {a.id: a for a in actions},
            effective_types,
            success_event="executed",
            failure_event="execute_failed",
        )

        logger.info(
            "actions_executed",
            batch_id=batch_id[:8],
            requested=len(action_ids),
            executed=executed,
            failed=len(outcome.failed),
            types=sorted(groups),
        )
        return ExecutionResult(
            batch_id=batch_id,
            executed=executed,
            failed=len(outcome.failed),
            errors=outcome.failed,
        )

    async def _apply(
        self, action_type: str, actions: list[ActionRecord], outcome: _Outcome, undo: bool
    ) -> None:
        """Issue the provider calls for one action type, recording every outcome."""
        label_changes = (UNDO_LABEL_CHANGES if undo else LABEL_CHANGES).get(action_type)

        if label_changes is not None:
            add, remove = label_changes
            for chunk in _chunks(actions, self.chunk_size):
                await self._attempt(
                    chunk,
                    lambda c=chunk: self._gateway.batch_modify_labels(
                        [a.message_id for a in c], add, remove
                    ),
                    outcome,
                )
        elif action_type == "move_to_trash":
            call = self._gateway.untrash_message if undo else self._gateway.trash_message
            for action in actions:
                await self._attempt([action], lambda a=action: call(a.message_id), outcome)
        elif action_type == "keep":
            outcome.succeeded.extend(actions)
        elif action_type == "unsubscribe":
            outcome.fail(actions, "Unsubscribe is not supported by this mailbox provider")
        else:
            outcome.fail(actions, f"Unknown action type '{action_type}'")

    async def _attempt(
        self,
        actions: list[ActionRecord],
        call: Callable[[], Awaitable[None]],
        outcome: _Outcome,
    ) -> None:
        try:
            await call()
        except ProviderUnavailable as e:
            logger.warning(
                "action_chunk_failed", count=len(actions), error_type=type(e).__name__, error=str(e)[:200]
            )
            outcome.fail(actions, str(e))
        else:
            outcome.succeeded.extend(actions)

    async def _audit(
        self,
        user_id: str,
        batch_id: str,
        outcome: _Outcome,
        actions: dict[str, ActionRecord],
        effective_types: dict[str, str],
        success_event: str,
        failure_event: str,
    ) -> None:
        def details(action: ActionRecord, **extra: object) -> dict[str, object]:
            return {
                "category": action.category,
                "confidence": action.confidence,
                "action_type": effective_types.get(action.id, action.action_type),
                **extra,
            }

        entries = [
            {
                "user_id": user_id,
                "action_id": a.id,
                "batch_id": batch_id,
                "event": success_event,
                "details": details(a, outcome="success"),
            }
            for a in outcome.succeeded
        ]
        entries.extend(
            {
                "user_id": user_id,
                "action_id": f.action_id,
                "batch_id": batch_id,
                "event": failure_event,
                "details": details(actions[f.action_id], outcome="failed", error=f.error[:500]),
            }
            for f in outcome.failed
        )
        await self._store.log_actions(entries)

    # -------------------------------------------------------------------------
    # Reject
    # -------------------------------------------------------------------------

    async def reject(
        self,
        user_id: str,
        action_id: str,
        user_category: str | None = None,
        user_action: str | None = None,
        feedback: str | None = None,
    ) -> None:
        """Reject a pending suggestion and record the user's correction.

        The sender's cached reputation is dropped; a corrected category
        replaces it with a user_override entry at full confidence.

        Raises:
            ValidationError: If the correction is not a known category or action
            NotFoundError: If the action does not exist for this user
            ConflictError: If the action is no longer pending
        """
        if user_category is not None and user_category not in VALID_CATEGORIES:
            raise ValidationError(f"Unknown category '{user_category}'", field="user_category")
        if user_action is not None and user_action not in VALID_ACTION_TYPES:
            raise ValidationError(f"Unknown action type '{user_action}'", field="user_action")

        found = await self._store.get_actions(user_id, [action_id])
        if not found:
            raise NotFoundError(
                f"Action {action_id} not found", resource="action", resource_id=action_id
            )
        action = found[0]
        if not await self._store.reject_action(user_id, action_id):
            raise ConflictError(
                f"Action {action_id} is {action.status}; only pending actions can be rejected",
                resource_id=action_id,
            )

        await self._store.save_feedback(user_id, action, user_category, user_action, feedback)
        await self._cache.invalidate(user_id, action.sender_address)
        if user_category is not None:
            await self._cache.store(
                user_id, action.sender_address, user_category, 1.0, "user_override"
            )

        await self._store.log_actions(
            [
                {
                    "user_id": user_id,
                    "action_id": action_id,
                    "event": "rejected",
                    "details": {
                        "category": action.category,
                        "action_type": action.action_type,
                        "corrected_category": user_category,
                        "corrected_action": user_action,
                    },
                }
            ]
        )
        logger.info(
            "action_rejected",
            action_id=action_id[:8],
            corrected=user_category is not None,
        )

    # -------------------------------------------------------------------------
    # Undo
    # -------------------------------------------------------------------------

    async def undo(self, user_id: str, batch_id: str) -> UndoResult:
        """Reverse the provider effects of one batch.

        Raises:
            NotFoundError: If the batch does not exist for this user
            ConflictError: If the batch was already undone
            UndoExpired: If the undo window has elapsed (no provider calls are made)
        """
        set_correlation_id(batch_id)
        batch = await self._store.get_action_batch(user_id, batch_id)
        if batch is None:
            raise NotFoundError(
                f"Action batch {batch_id} not found", resource="batch", resource_id=batch_id
            )
        if batch.undone_at is not None:
            raise ConflictError(f"Action batch {batch_id} was already undone", resource_id=batch_id)
        if self._clock() - batch.executed_at > self.undo_window:
            raise UndoExpired(batch_id, int(self.undo_window.total_seconds()))
        if not await self._store.mark_batch_undone(batch_id):
            raise ConflictError(f"Action batch {batch_id} was already undone", resource_id=batch_id)

        actions = await self._store.get_batch_actions(batch_id)
        groups: dict[str, list[ActionRecord]] = {}
        for action in actions:
            groups.setdefault(action.executed_action_type or action.action_type, []).append(action)

        outcome = _Outcome()
        for action_type, group in groups.items():
            await self._apply(action_type, group, outcome, undo=True)

        result = UndoResult(batch_id=batch_id, failed=len(outcome.failed), errors=outcome.failed)
        reverted = _Outcome(failed=outcome.failed)
        for action in outcome.succeeded:
            if await self._store.revert_action(action.id, batch_id):
                result.undone += 1
                reverted.succeeded.append(action)
            else:
                result.skipped += 1

        await self._audit(
            user_id,
            batch_id,
            reverted,
            {a.id: a for a in actions},
            {a.id: a.executed_action_type or a.action_type for a in actions},
            success_event="undone",
            failure_event="undo_failed",
        )
        logger.info(
            "batch_undone",
            batch_id=batch_id[:8],
            undone=result.undone,
            failed=result.failed,
            skipped=result.skipped,
        )
        return result
