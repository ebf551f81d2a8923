"""Wiring of the pipeline components from configuration.

Shared by the web lifespan and the CLI so both build the same object graph:

    DatabaseStore -> SenderReputationCache -> CategorizationEngine
    MailboxGateway -> ScanOrchestrator, ActionExecutor

Usage:
    from sweeper.services import build_services

    services = await build_services(config)
    started = await services.orchestrator.start_scan("user-1", "in:inbox", 100)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from sweeper.classifier.engine import CategorizationEngine, build_engine
from sweeper.core.logging import get_logger
from sweeper.db.store import DatabaseStore
from sweeper.engine.executor import ActionExecutor
from sweeper.engine.scan import ScanOrchestrator
from sweeper.mailbox.gmail import GmailClient, GmailGateway, TokenProvider, env_token_provider

if TYPE_CHECKING:
    from sweeper.classifier.providers import LLMProvider
    from sweeper.config_schema import AppConfig
    from sweeper.mailbox.gateway import MailboxGateway

logger = get_logger(__name__)


@dataclass
class Services:
    """The pipeline's long-lived components."""

    config: AppConfig
    store: DatabaseStore
    gateway: MailboxGateway
    engine: CategorizationEngine
    orchestrator: ScanOrchestrator
    executor: ActionExecutor


def build_gateway(config: AppConfig, token_provider: TokenProvider | None = None) -> GmailGateway:
    """Gmail gateway; tokens come from the configured env var unless injected."""
    gmail = config.gmail
    client = GmailClient(
        token_provider=token_provider or env_token_provider(gmail.access_token_env),
        base_url=gmail.base_url,
        timeout=gmail.timeout_seconds,
        max_retries=gmail.max_retries,
        requests_per_second=gmail.requests_per_second,
        page_size=gmail.page_size,
    )
    return GmailGateway(client)


async def build_services(
    config: AppConfig,
    gateway: MailboxGateway | None = None,
    primary: LLMProvider | None = None,
    fallback: LLMProvider | None = None,
) -> Services:
    """Initialize the database and build every component.

    Args:
        config: Validated application config
        gateway: Mailbox gateway override (defaults to Gmail)
        primary: Primary LLM provider override (defaults to config.llm.primary)
        fallback: Fallback LLM provider override
    """
    db_path = Path(config.database.path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    store = DatabaseStore(db_path, read_chunk_size=config.database.read_chunk_size)
    await store.initialize()

    gateway = gateway or build_gateway(config)
    engine = build_engine(config, store, primary=primary, fallback=fallback)

    orchestrator = ScanOrchestrator(
        gateway,
        engine,
        store,
        batch_size=config.scan.batch_size,
        max_items_limit=config.scan.max_items_limit,
    )
    executor = ActionExecutor(
        gateway,
        store,
        engine.cache,
        chunk_size=config.actions.provider_chunk_size,
        undo_window_seconds=config.actions.undo_window_seconds,
        max_ids_per_request=config.actions.max_ids_per_request,
    )

    logger.info("services_initialized", db_path=str(db_path), cache_backend=config.cache.backend)
    return Services(
        config=config,
        store=store,
        gateway=gateway,
        engine=engine,
        orchestrator=orchestrator,
        executor=executor,
    )
