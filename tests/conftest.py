"""Pytest fixtures and configuration for Mail Sweeper tests.

Provides common fixtures for configuration, database, raw Gmail messages,
and fakes for the mailbox gateway and LLM providers.
"""

import os
from collections.abc import Callable
from datetime import UTC, datetime
from email.utils import format_datetime
from pathlib import Path
from typing import Any, Generator
from unittest.mock import AsyncMock

import pytest

from sweeper.classifier.providers import LLMItem, LLMResponse
from sweeper.config import CONFIG_PATH_ENV, reset_config
from sweeper.config_schema import AppConfig
from sweeper.db.store import DatabaseStore
from sweeper.mailbox.extractor import EmailRecord, MetadataExtractor


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

scan:
  batch_size: 30
  default_query: "in:inbox"

llm:
  primary:
    kind: anthropic
    model: "claude-haiku-4-5-20251001"

actions:
  undo_window_seconds: 300
  provider_chunk_size: 50
"""


@pytest.fixture
def sample_config_dict(tmp_path: Path) -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "scan": {"batch_size": 30, "default_query": "in:inbox", "default_max_items": 100},
        "categorization": {"llm_batch_size": 20},
        "llm": {"max_attempts": 1, "retry_base_delay": 0.0},
        "actions": {"undo_window_seconds": 300, "provider_chunk_size": 50},
        "database": {"path": str(tmp_path / "data" / "sweeper.db")},
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the SWEEPER_CONFIG_PATH environment variable."""
    old_value = os.environ.get(CONFIG_PATH_ENV)
    os.environ[CONFIG_PATH_ENV] = str(config_file)
    yield
    if old_value is None:
        del os.environ[CONFIG_PATH_ENV]
    else:
        os.environ[CONFIG_PATH_ENV] = old_value


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
async def store(tmp_path: Path) -> DatabaseStore:
    """An initialized store backed by a temporary SQLite file."""
    db = DatabaseStore(tmp_path / "test.db")
    await db.initialize()
    return db


# ---------------------------------------------------------------------------
# Raw messages and records
# ---------------------------------------------------------------------------


def raw_message(
    msg_id: str = "msg-001",
    sender: str = "Alice Example <alice@example.org>",
    subject: str = "Lunch on Friday?",
    snippet: str = "Are you free for lunch this Friday?",
    labels: list[str] | None = None,
    date: datetime | None = None,
    extra_headers: dict[str, str] | None = None,
    size_estimate: int = 4000,
) -> dict[str, Any]:
    """Create a raw Gmail metadata-format message dict for testing."""
    headers = [
        {"name": "From", "value": sender},
        {"name": "Subject", "value": subject},
        {"name": "Date", "value": format_datetime(date or datetime(2026, 10, 1, 9, 0, tzinfo=UTC))},
    ]
    headers.extend({"name": k, "value": v} for k, v in (extra_headers or {}).items())
    return {
        "id": msg_id,
        "threadId": f"thread-{msg_id}",
        "labelIds": labels if labels is not None else ["INBOX", "UNREAD"],
        "snippet": snippet,
        "sizeEstimate": size_estimate,
        "payload": {"headers": headers},
    }


@pytest.fixture
def make_raw_message() -> Callable[..., dict[str, Any]]:
    return raw_message


@pytest.fixture
def make_record() -> Callable[..., EmailRecord]:
    """Build an EmailRecord through the real extractor."""
    extractor = MetadataExtractor()

    def build(**kwargs: Any) -> EmailRecord:
        record = extractor.extract(raw_message(**kwargs))
        assert record is not None
        return record

    return build


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeProvider:
    """LLM provider returning a fixed category, or raising configured errors.

    Attributes:
        calls: Batches received, in order
        errors: Exceptions raised (one per call) before answering normally
    """

    def __init__(
        self,
        name: str = "primary",
        category: str = "newsletter",
        confidence: float = 0.9,
        errors: list[Exception] | None = None,
    ):
        self.name = name
        self.category = category
        self.confidence = confidence
        self.errors = list(errors or [])
        self.calls: list[list[str]] = []
        self.input_cost_per_mtok = 1.0
        self.output_cost_per_mtok = 5.0

    def classify(self, records: list[EmailRecord]) -> LLMResponse:
        self.calls.append([r.id for r in records])
        if self.errors:
            raise self.errors.pop(0)
        return LLMResponse(
            items=[
                LLMItem(
                    email_id=r.id,
                    category=self.category,
                    confidence=self.confidence,
                    reasoning="fake",
                )
                for r in records
            ],
            input_tokens=100 * len(records),
            output_tokens=20 * len(records),
            model="fake-model",
        )


@pytest.fixture
def make_provider() -> Callable[..., FakeProvider]:
    return FakeProvider


@pytest.fixture
def fake_gateway() -> AsyncMock:
    """Mailbox gateway double that serves raw_message() for every requested id."""
    gateway = AsyncMock()
    gateway.max_modify_batch = 1000
    gateway.list_message_ids.return_value = []
    gateway.batch_get_messages.side_effect = lambda ids: [
        raw_message(msg_id=i, sender=f"Sender {i} <person{i}@example.org>") for i in ids
    ]
    return gateway
