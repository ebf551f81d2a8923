"""Configuration loading for Mail Sweeper.

config.yaml is parsed with PyYAML and validated against the pydantic models
in sweeper.config_schema. The validated AppConfig is kept as a process-wide
singleton shared by the CLI and the uvicorn worker threads.

Hot reload: the API re-reads the file when its mtime changes (checked
when a request resolves the config dependency). A changed file that fails
validation is logged and ignored; the last good config stays active until
the file changes again.

Usage:
    from sweeper.config import get_config, reload_config_if_changed

    config = get_config()

    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from sweeper.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from sweeper.core.errors import ConfigLoadError, ConfigValidationError
from sweeper.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "SWEEPER_CONFIG_PATH"

# Extra guidance for fields whose raw pydantic message is not self-explanatory
FIELD_HINTS: dict[str, str] = {
    "llm.primary": "ollama providers need base_url, e.g. http://localhost:11434",
    "llm.fallback": "ollama providers need base_url, e.g. http://localhost:11434",
    "gmail.base_url": "use the https Gmail API root",
    "database.path": "use a path inside the project, e.g. data/sweeper.db",
    "scan": "scan.default_max_items must not exceed scan.max_items_limit",
}

# Singleton state, guarded by _config_lock
_config_lock = threading.Lock()
_current_config: AppConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def resolve_config_path(path: Path | None = None) -> Path:
    """Pick the config file to use.

    Args:
        path: Explicit path (CLI --config); wins over everything else

    Returns:
        `path`, else $SWEEPER_CONFIG_PATH, else config/config.yaml
    """
    if path is not None:
        return path
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Turn pydantic errors into one actionable line per field.

    Args:
        error: The pydantic ValidationError raised by AppConfig

    Returns:
        Lines like "  - Field 'scan.batch_size' must be an integer"
    """
    messages = []
    for err in error.errors():
        # e.g. "scan.batch_size"
        field_path = ".".join(str(loc) for loc in err["loc"])
        err_type = err["type"]

        if err_type == "missing":
            line = f"  - Missing required field '{field_path}'"
        elif err_type in ("int_type", "int_parsing"):
            line = f"  - Field '{field_path}' must be an integer"
        elif err_type in ("float_type", "float_parsing"):
            line = f"  - Field '{field_path}' must be a number"
        elif err_type == "literal_error":
            line = f"  - Field '{field_path}' has an unsupported value: {err['msg']}"
        else:
            line = f"  - Field '{field_path}': {err['msg']}"

        hint = FIELD_HINTS.get(field_path)
        if hint:
            line += f" ({hint})"
        messages.append(line)

    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Read config.yaml into a dict.

    An empty file yields {} so every section falls back to its defaults.

    Args:
        path: Config file location

    Returns:
        The top-level YAML mapping

    Raises:
        ConfigLoadError: If the file is missing, unparseable or not a mapping
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Build an AppConfig and check the schema version.

    Args:
        data: Parsed YAML mapping
        path: Config file location, for error messages

    Returns:
        Validated AppConfig

    Raises:
        ConfigValidationError: If a field is invalid or the file targets a
            newer schema than this release understands
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{_format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Please upgrade Mail Sweeper or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate config.yaml from disk, bypassing the singleton.

    Args:
        path: Config file; see resolve_config_path() for the default

    Returns:
        Validated AppConfig

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If validation fails
    """
    config_path = resolve_config_path(path)
    logger.debug("config_loading", path=str(config_path))

    config = _validate_config(_load_yaml(config_path), config_path)

    logger.info(
        "config_loaded",
        path=str(config_path),
        schema_version=config.schema_version,
        primary_llm=config.llm.primary.kind,
        fallback_llm=config.llm.fallback.kind if config.llm.fallback else None,
        cache_backend=config.cache.backend,
    )
    return config


def get_config() -> AppConfig:
    """Return the config singleton, loading it on first use.

    Returns:
        The active AppConfig

    Raises:
        ConfigLoadError: If the first load cannot read the file
        ConfigValidationError: If the first load fails validation
    """
    global _current_config, _config_path, _config_mtime

    with _config_lock:
        if _current_config is None:
            _config_path = resolve_config_path()
            _current_config = load_config(_config_path)
            _config_mtime = _config_path.stat().st_mtime

        return _current_config


def reload_config_if_changed() -> bool:
    """Reload the singleton if config.yaml changed on disk.

    Does nothing before the first get_config(). An invalid new file keeps
    the previous config and is not re-parsed until its mtime moves again.

    Returns:
        True only if a new, valid config was loaded
    """
    global _current_config, _config_mtime

    with _config_lock:
        if _config_path is None:
            return False

        try:
            current_mtime = _config_path.stat().st_mtime
        except OSError as e:
            logger.warning("config_mtime_check_failed", path=str(_config_path), error=str(e))
            return False

        if current_mtime <= _config_mtime:
            return False

        logger.info("config_changed", path=str(_config_path))
        _config_mtime = current_mtime
        try:
            _current_config = load_config(_config_path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_failed", path=str(_config_path), error=str(e))
            return False
        return True


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file without touching the singleton.

    Args:
        path: Config file; see resolve_config_path() for the default

    Returns:
        (is_valid, message); the message summarizes the effective settings
        on success and lists the errors otherwise
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    primary = config.llm.primary
    fallback = config.llm.fallback
    lines = [
        f"Configuration valid (schema version {config.schema_version})",
        f"  - primary LLM: {primary.kind} ({primary.model})",
        f"  - fallback LLM: {f'{fallback.kind} ({fallback.model})' if fallback else 'none'}",
        f"  - scan batch size: {config.scan.batch_size}, "
        f"default limit: {config.scan.default_max_items}",
        f"  - sender cache: {config.cache.backend} (ttl {config.cache.ttl_days} days)",
        f"  - undo window: {config.actions.undo_window_seconds}s",
        f"  - database: {config.database.path}",
    ]
    return (True, "\n".join(lines))


def reset_config() -> None:
    """Forget the singleton so the next get_config() reads the file again."""
    global _current_config, _config_path, _config_mtime
    with _config_lock:
        _current_config = None
        _config_path = None
        _config_mtime = 0.0
