"""FastAPI application for the Mail Sweeper control surface.

Creates the FastAPI app with:
- Lifespan context manager that builds the pipeline services from config
- One exception handler mapping the error taxonomy to HTTP status codes
- The /api/v1 router

Tests pass prebuilt Services to `create_app` so no config file, Gmail token
or LLM key is needed.

Usage:
    from sweeper.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sweeper.core.errors import (
    CircuitOpen,
    ConfigLoadError,
    ConfigValidationError,
    ConflictError,
    NotFoundError,
    ProviderUnavailable,
    RateLimitExceeded,
    SweeperError,
    UndoExpired,
    ValidationError,
)
from sweeper.core.logging import get_logger

if TYPE_CHECKING:
    from sweeper.services import Services

logger = get_logger(__name__)

# Most specific first; the first isinstance match wins
ERROR_STATUS_CODES: tuple[tuple[type[SweeperError], int], ...] = (
    (ValidationError, 422),
    (NotFoundError, 404),
    (UndoExpired, 410),
    (ConflictError, 409),
    (RateLimitExceeded, 429),
    (ProviderUnavailable, 502),
    (CircuitOpen, 503),
)


def status_for(exc: SweeperError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def sweeper_error_handler(request: Request, exc: SweeperError) -> JSONResponse:
    """Render a domain error as {"error": <type>, "detail": <message>}."""
    status_code = status_for(exc)
    log = logger.warning if status_code < 500 else logger.error
    log(
        "api_request_failed",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc)[:200],
    )
    body: dict[str, object] = {"error": type(exc).__name__, "detail": str(exc)}
    field = getattr(exc, "field", None)
    if field:
        body["field"] = field
    return JSONResponse(status_code=status_code, content=body)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services on startup unless they were injected.

    On startup:
    1. Load config
    2. Configure logging
    3. Initialize the database and build the pipeline services

    A config failure leaves app.state.services as None; API routes then
    answer 503 while /api/v1/health keeps working.
    """
    if getattr(app.state, "services", None) is not None:
        yield
        return

    from sweeper.config import get_config
    from sweeper.core.logging import configure_logging
    from sweeper.services import build_services

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        app.state.services = None
        yield
        return

    configure_logging(config.logging.level, json_output=config.logging.json_output)
    app.state.services = await build_services(config)
    logger.info("app_started")

    yield

    logger.info("app_stopped")


def create_app(services: Services | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Prebuilt services; built from config at startup when omitted

    Returns:
        Configured FastAPI instance
    """
    from sweeper.web.routes import api_router

    app = FastAPI(
        title="Mail Sweeper",
        description="Mailbox scanning, categorization and cleanup API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_exception_handler(SweeperError, sweeper_error_handler)
    app.include_router(api_router)

    return app
