"""Pydantic configuration schema for Mail Sweeper.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from sweeper.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class ScanConfig(BaseModel):
    """Scan orchestration configuration."""

    batch_size: int = Field(
        default=30,
        ge=1,
        le=100,
        description="Messages fetched and classified per batch call",
    )
    default_query: str = Field(
        default="in:inbox",
        description="Mailbox search query used when the caller supplies none",
    )
    default_max_items: int = Field(
        default=500,
        ge=1,
        le=5000,
        description="Messages listed per scan when the caller supplies no limit",
    )
    max_items_limit: int = Field(
        default=5000,
        ge=1,
        le=50000,
        description="Upper bound accepted for max_items on scan start",
    )

    @model_validator(mode="after")
    def validate_limits(self) -> "ScanConfig":
        """Default item count must fit under the accepted maximum."""
        if self.default_max_items > self.max_items_limit:
            raise ValueError(
                f"default_max_items ({self.default_max_items}) cannot exceed "
                f"max_items_limit ({self.max_items_limit})"
            )
        return self


class CategorizationConfig(BaseModel):
    """Layered categorization engine configuration."""

    heuristics_enabled: bool = Field(
        default=True,
        description="Run the rule layer before the cache and LLM",
    )
    heuristic_min_confidence: float = Field(
        default=0.70,
        ge=0.0,
        le=1.0,
        description="Rule matches below this confidence are ignored",
    )
    llm_batch_size: int = Field(
        default=20,
        ge=1,
        le=50,
        description="Records per LLM request",
    )
    breaker_failure_threshold: int = Field(
        default=3,
        ge=1,
        le=20,
        description="Consecutive provider failures that open the circuit",
    )
    breaker_cooldown_seconds: float = Field(
        default=60.0,
        gt=0,
        le=3600,
        description="Seconds an open circuit stays open",
    )


class CacheConfig(BaseModel):
    """Sender reputation cache configuration."""

    backend: Literal["sqlite", "memory"] = Field(
        default="sqlite",
        description="'sqlite' persists entries in the database; 'memory' is per-process",
    )
    ttl_days: int = Field(
        default=30,
        ge=1,
        le=365,
        description="Entries older than this are treated as missing",
    )
    decay_per_day: float = Field(
        default=0.002,
        ge=0.0,
        le=0.1,
        description="Confidence lost per day since the entry was cached",
    )
    max_decay: float = Field(
        default=0.05,
        ge=0.0,
        le=1.0,
        description="Upper bound on total confidence decay",
    )
    memory_max_entries: int = Field(
        default=10000,
        ge=10,
        le=1_000_000,
        description="Entry cap for the in-process cache (least recently used evicted)",
    )


class LLMProviderConfig(BaseModel):
    """One LLM provider endpoint."""

    kind: Literal["anthropic", "ollama"] = Field(
        default="anthropic",
        description="Provider implementation",
    )
    model: str = Field(
        default="claude-haiku-4-5-20251001",
        description="Model identifier passed to the provider",
    )
    api_key_env: str = Field(
        default="ANTHROPIC_API_KEY",
        description="Environment variable holding the API key (anthropic only)",
    )
    base_url: str | None = Field(
        default=None,
        description="Endpoint override (required for ollama)",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Per-call timeout",
    )
    max_tokens: int = Field(
        default=4096,
        ge=256,
        le=32768,
        description="Maximum output tokens per call",
    )
    input_cost_per_mtok: float = Field(
        default=1.0,
        ge=0.0,
        description="USD per million input tokens, for cost estimates",
    )
    output_cost_per_mtok: float = Field(
        default=5.0,
        ge=0.0,
        description="USD per million output tokens, for cost estimates",
    )

    @model_validator(mode="after")
    def validate_base_url(self) -> "LLMProviderConfig":
        """Ollama has no default endpoint."""
        if self.kind == "ollama" and not self.base_url:
            raise ValueError("base_url is required when kind is 'ollama'")
        return self


class LLMConfig(BaseModel):
    """Primary and optional fallback LLM providers."""

    primary: LLMProviderConfig = Field(default_factory=LLMProviderConfig)
    fallback: LLMProviderConfig | None = Field(
        default=None,
        description="Used when the primary is failing or its circuit is open",
    )
    max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per provider call (1 = no retry)",
    )
    retry_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="First backoff delay in seconds (doubles per attempt)",
    )


class ActionsConfig(BaseModel):
    """Action executor configuration."""

    undo_window_seconds: int = Field(
        default=300,
        ge=0,
        le=86400,
        description="How long an executed batch can be undone",
    )
    provider_chunk_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Message ids per bulk label request",
    )
    max_ids_per_request: int = Field(
        default=1000,
        ge=1,
        le=10000,
        description="Upper bound on action ids per execute call",
    )
    archive_after_days: int = Field(
        default=30,
        ge=1,
        le=3650,
        description="Transactional mail older than this is suggested for archive",
    )


class GmailConfig(BaseModel):
    """Gmail REST adapter configuration."""

    base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1/users/me",
        description="Gmail API user root",
    )
    access_token_env: str = Field(
        default="GMAIL_ACCESS_TOKEN",
        description="Environment variable holding the OAuth access token",
    )
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    max_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for 429/5xx/network errors",
    )
    requests_per_second: float = Field(
        default=10.0,
        gt=0,
        le=250,
        description="Token bucket refill rate for Gmail requests",
    )
    page_size: int = Field(
        default=500,
        ge=1,
        le=500,
        description="Ids per list page",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an HTTPS endpoint without trailing slash."""
        if not v.startswith("https://"):
            raise ValueError("Gmail base_url must use https://")
        return v.rstrip("/")


class DatabaseConfig(BaseModel):
    """SQLite persistence configuration."""

    path: str = Field(
        default="data/sweeper.db",
        description="Path to the SQLite database file",
    )
    read_chunk_size: int = Field(
        default=100,
        ge=1,
        le=900,
        description="Ids per IN (...) query when loading records",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LoggingConfig(BaseModel):
    """Structured logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(
        default=True,
        description="JSON lines (server) or console rendering (CLI)",
    )


class AppConfig(BaseModel):
    """Root configuration schema for Mail Sweeper.

    This model validates the entire config.yaml structure. On startup and
    hot-reload, the YAML is parsed and validated against this schema.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    scan: ScanConfig = Field(default_factory=ScanConfig)
    categorization: CategorizationConfig = Field(default_factory=CategorizationConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    actions: ActionsConfig = Field(default_factory=ActionsConfig)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
