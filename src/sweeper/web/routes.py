"""JSON API routes for Mail Sweeper.

All routes live under /api/v1 and take the caller's user id from the
X-User-Id header. Request bodies are validated by pydantic models with
closed enums before any side effect; domain errors raised by the engines
are mapped to status codes by the exception handler in sweeper.web.app.

Scan flow:
    POST /api/v1/scan                     start a scan, list ids
    POST /api/v1/scan/{scan_id}/process   process the batch at `offset`
    GET  /api/v1/scan/{scan_id}           current progress
    GET  /api/v1/scan/{scan_id}/actions   suggested actions for review
    GET  /api/v1/scans                    recent scans

Action flow:
    POST /api/v1/actions/execute
    POST /api/v1/actions/reject
    POST /api/v1/actions/undo
    GET  /api/v1/actions/history          paginated history (status, category filters)
    GET  /api/v1/actions/{action_id}/log  audit trail of one action

Usage:
    GET  /api/v1/usage                    monthly totals and feedback count
"""

from __future__ import annotations

import math
from dataclasses import asdict
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from sweeper.classifier.categories import ActionType, Category
from sweeper.config_schema import AppConfig
from sweeper.core.errors import NotFoundError
from sweeper.core.logging import get_logger
from sweeper.db.store import ActionRecord, ActionStatus, DatabaseStore, UsageRecord
from sweeper.engine.executor import ActionExecutor
from sweeper.engine.scan import BatchProgress, ScanOrchestrator, usage_period
from sweeper.web.dependencies import (
    get_config,
    get_executor,
    get_orchestrator,
    get_store,
    get_user_id,
)

logger = get_logger(__name__)

api_router = APIRouter(prefix="/api/v1")

DEFAULT_PAGE_LIMIT = 25
MAX_PAGE_LIMIT = 100


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class StartScanRequest(BaseModel):
    """Request body for starting a scan. Omitted fields use config defaults."""

    query: str | None = Field(default=None, max_length=500)
    max_items: int | None = Field(default=None, ge=1)


class ProcessBatchRequest(BaseModel):
    """Request body for processing the next batch of a scan."""

    offset: int = Field(ge=0)


class ExecuteRequest(BaseModel):
    """Request body for executing suggested actions."""

    action_ids: list[str] = Field(min_length=1)
    action_type: ActionType | None = None


class RejectRequest(BaseModel):
    """Request body for rejecting a suggestion with an optional correction."""

    action_id: str = Field(min_length=1)
    user_category: Category | None = None
    user_action: ActionType | None = None
    feedback: str | None = Field(default=None, max_length=1000)


class UndoRequest(BaseModel):
    """Request body for undoing an executed batch."""

    batch_id: str = Field(min_length=1)


def _action_to_dict(action: ActionRecord) -> dict[str, Any]:
    return {
        "id": action.id,
        "message_id": action.message_id,
        "sender_address": action.sender_address,
        "sender_name": action.sender_name,
        "subject_preview": action.subject_preview,
        "email_date": action.email_date.isoformat() if action.email_date else None,
        "category": action.category,
        "confidence": action.confidence,
        "source": action.source,
        "reasoning": action.reasoning,
        "action_type": action.action_type,
        "executed_action_type": action.executed_action_type,
        "status": action.status,
        "batch_id": action.batch_id,
    }


# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------


@api_router.post("/scan")
async def start_scan(
    body: StartScanRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    config: AppConfig = Depends(get_config),
) -> dict[str, Any]:
    """Start a scan and list its message ids."""
    scan_config = config.scan
    started = await orchestrator.start_scan(
        user_id,
        body.query or scan_config.default_query,
        body.max_items or scan_config.default_max_items,
    )
    return asdict(started)


@api_router.post("/scan/{scan_id}/process")
async def process_batch(
    scan_id: str,
    body: ProcessBatchRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Process the batch at `offset`. Replaying an earlier offset is a no-op."""
    progress = await orchestrator.process_next_batch(user_id, scan_id, body.offset)
    return asdict(progress)


@api_router.get("/scan/{scan_id}")
async def scan_status(
    scan_id: str,
    user_id: str = Depends(get_user_id),
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    progress = await orchestrator.get_progress(user_id, scan_id)
    return asdict(progress)


@api_router.get("/scan/{scan_id}/actions")
async def scan_actions(
    scan_id: str,
    status: ActionStatus | None = Query(default=None),
    user_id: str = Depends(get_user_id),
    orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    store: DatabaseStore = Depends(get_store),
) -> dict[str, Any]:
    """Suggested actions of a scan, for review before execution."""
    await orchestrator.get_progress(user_id, scan_id)
    actions = await store.list_scan_actions(user_id, scan_id, status=status)
    return {"scan_id": scan_id, "actions": [_action_to_dict(a) for a in actions]}


@api_router.get("/scans")
async def list_scans(
    limit: int = Query(default=20, ge=1, le=MAX_PAGE_LIMIT),
    user_id: str = Depends(get_user_id),
    store: DatabaseStore = Depends(get_store),
) -> dict[str, Any]:
    """The caller's most recent scans, newest first."""
    scans = await store.list_scans(user_id, limit=limit)
    return {
        "scans": [
            {
                **asdict(BatchProgress.from_scan(scan)),
                "query": scan.query,
                "started_at": scan.started_at.isoformat(),
                "completed_at": scan.completed_at.isoformat() if scan.completed_at else None,
                "llm_calls": scan.llm_calls,
                "llm_cost_usd": scan.llm_cost_usd,
            }
            for scan in scans
        ]
    }


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


@api_router.post("/actions/execute")
async def execute_actions(
    body: ExecuteRequest,
    user_id: str = Depends(get_user_id),
    executor: ActionExecutor = Depends(get_executor),
) -> dict[str, Any]:
    """Execute pending actions. Partial failure is reported, not raised."""
    result = await executor.execute(user_id, body.action_ids, type_override=body.action_type)
    return asdict(result)


@api_router.post("/actions/reject")
async def reject_action(
    body: RejectRequest,
    user_id: str = Depends(get_user_id),
    executor: ActionExecutor = Depends(get_executor),
) -> dict[str, Any]:
    await executor.reject(
        user_id,
        body.action_id,
        user_category=body.user_category,
        user_action=body.user_action,
        feedback=body.feedback,
    )
    return {"action_id": body.action_id, "status": "rejected"}


@api_router.post("/actions/undo")
async def undo_batch(
    body: UndoRequest,
    user_id: str = Depends(get_user_id),
    executor: ActionExecutor = Depends(get_executor),
) -> dict[str, Any]:
    result = await executor.undo(user_id, body.batch_id)
    return asdict(result)


@api_router.get("/actions/history")
async def action_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    status: ActionStatus | None = Query(default=None),
    category: Category | None = Query(default=None),
    user_id: str = Depends(get_user_id),
    store: DatabaseStore = Depends(get_store),
) -> dict[str, Any]:
    """Paginated action history across scans, newest first."""
    actions, total = await store.list_action_history(
        user_id, limit=limit, offset=(page - 1) * limit, status=status, category=category
    )
    return {
        "actions": [_action_to_dict(a) for a in actions],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "total_pages": math.ceil(total / limit),
        },
    }


@api_router.get("/actions/{action_id}/log")
async def action_log(
    action_id: str,
    user_id: str = Depends(get_user_id),
    store: DatabaseStore = Depends(get_store),
) -> dict[str, Any]:
    """Audit trail of one action (executions, failures, rejections, undos)."""
    if not await store.get_actions(user_id, [action_id]):
        raise NotFoundError(
            f"Action {action_id} not found", resource="action", resource_id=action_id
        )
    return {"action_id": action_id, "entries": await store.get_action_logs(action_id)}


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------


@api_router.get("/usage")
async def usage(
    period: str | None = Query(default=None, pattern=r"^\d{4}-\d{2}-01$"),
    user_id: str = Depends(get_user_id),
    store: DatabaseStore = Depends(get_store),
) -> dict[str, Any]:
    """Monthly usage totals (current month unless `period` is given)."""
    period_start = period or usage_period(datetime.now(UTC))
    record = await store.get_usage(user_id, period_start) or UsageRecord(
        user_id=user_id, period_start=period_start
    )
    totals = asdict(record)
    totals.pop("user_id")
    return {**totals, "feedback_count": await store.count_feedback(user_id)}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@api_router.get("/health")
async def health() -> dict[str, str]:
    """Liveness check. Does not touch the mailbox or LLM providers."""
    return {"status": "ok"}
