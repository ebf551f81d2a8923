"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All components are built during the FastAPI lifespan and stored on
app.state.services.

Usage:
    from sweeper.web.dependencies import get_orchestrator, get_user_id

    @router.get("/scan/{scan_id}")
    async def scan_status(
        scan_id: str,
        user_id: str = Depends(get_user_id),
        orchestrator: ScanOrchestrator = Depends(get_orchestrator),
    ): ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Annotated

from fastapi import Header, HTTPException, Request

if TYPE_CHECKING:
    from sweeper.config_schema import AppConfig
    from sweeper.db.store import DatabaseStore
    from sweeper.engine.executor import ActionExecutor
    from sweeper.engine.scan import ScanOrchestrator
    from sweeper.services import Services

MAX_USER_ID_LENGTH = 128


def get_user_id(
    x_user_id: Annotated[str, Header(min_length=1, max_length=MAX_USER_ID_LENGTH)],
) -> str:
    """The caller's user id. Authentication happens upstream; the header is trusted."""
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=422, detail="X-User-Id header must not be blank")
    return user_id


def get_services(request: Request) -> Services:
    """Get the shared Services container, or 503 if startup failed."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized; check the config")
    return services


def get_store(request: Request) -> DatabaseStore:
    """Get the shared DatabaseStore from app state."""
    return get_services(request).store


def get_orchestrator(request: Request) -> ScanOrchestrator:
    """Get the ScanOrchestrator from app state."""
    return get_services(request).orchestrator


def get_executor(request: Request) -> ActionExecutor:
    """Get the ActionExecutor from app state."""
    return get_services(request).executor


def get_config(request: Request) -> AppConfig:
    """Get the current AppConfig, picking up edits to the config file.

    Only request-time settings (scan defaults and limits) follow a reload;
    components built at startup keep the values they were built with.
    """
    from sweeper import config as config_module

    services = get_services(request)
    if config_module.reload_config_if_changed():
        services.config = config_module.get_config()
    return services.config
