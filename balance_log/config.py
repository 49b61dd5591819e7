"""
Configuration loading.

Settings come from, in increasing priority:
1. Built-in defaults
2. config/settings.yaml (${VAR} references expanded from the environment)
3. BALANCE_LOG_* environment variables (.env is loaded first)

The store itself never reads configuration; it is handed a StoreConfig.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
import structlog
import yaml
from dotenv import find_dotenv, load_dotenv

from balance_log.errors import ConfigError
from balance_log.storage.schema import DEFAULT_TABLE_NAME, validate_table_name

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/settings.yaml"

BACKENDS = ("duckdb", "postgres")

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


@dataclass(frozen=True)
class StoreConfig:
    """Everything needed to open an event store and set up logging."""
    backend: str = "duckdb"
    table: str = DEFAULT_TABLE_NAME

    # DuckDB
    duckdb_path: str = "data/balance_updates.duckdb"
    read_only: bool = False

    # PostgreSQL
    postgres_dsn: str = ""
    connect_timeout_seconds: float = 5.0

    # Bound on a single call to the medium (None = unbounded)
    timeout_seconds: Optional[float] = 30.0

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False

    def __post_init__(self):
        if self.backend not in BACKENDS:
            raise ConfigError(f"unknown backend {self.backend!r}, expected one of {BACKENDS}")
        validate_table_name(self.table)
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ConfigError(f"timeout_seconds must be positive, got {self.timeout_seconds}")
        if self.connect_timeout_seconds <= 0:
            raise ConfigError(
                f"connect_timeout_seconds must be positive, got {self.connect_timeout_seconds}"
            )


def load_config(path: Optional[str] = None, load_env_file: bool = True) -> StoreConfig:
    """
    Load configuration from YAML and the environment.

    Args:
        path: YAML file; defaults to BALANCE_LOG_CONFIG or config/settings.yaml
        load_env_file: Load .env (searched from the working directory) first

    Raises:
        ConfigError: on unreadable YAML or invalid values
    """
    if load_env_file:
        load_dotenv(find_dotenv(usecwd=True))

    path = path or os.environ.get("BALANCE_LOG_CONFIG", DEFAULT_CONFIG_PATH)
    raw = _read_yaml(Path(path))

    store = raw.get("store", {}) or {}
    duckdb_section = store.get("duckdb", {}) or {}
    postgres_section = store.get("postgres", {}) or {}
    logging_section = raw.get("logging", {}) or {}

    values: dict[str, Any] = {
        "backend": store.get("backend"),
        "table": store.get("table"),
        "duckdb_path": duckdb_section.get("path"),
        "read_only": duckdb_section.get("read_only"),
        "postgres_dsn": postgres_section.get("dsn"),
        "connect_timeout_seconds": postgres_section.get("connect_timeout_seconds"),
        "timeout_seconds": store.get("timeout_seconds"),
        "log_level": logging_section.get("level"),
        "json_logs": logging_section.get("json"),
    }
    values = {k: expand_env_vars(v) for k, v in values.items() if v is not None}
    # An explicit null disables the per-call timeout; an absent key keeps the default
    if "timeout_seconds" in store and store["timeout_seconds"] is None:
        values["timeout_seconds"] = None

    values.update(_env_overrides())

    try:
        config = StoreConfig(**_coerce(values))
    except ConfigError:
        raise
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid configuration: {e}") from e

    logger.debug("config_loaded", path=str(path), backend=config.backend, table=config.table)
    return config


def _read_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        logger.warning("config_not_found_using_defaults", path=str(config_path))
        return {}

    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return raw


def expand_env_vars(value: Any) -> Any:
    """Expand ${VAR} references; unknown variables are left as written."""
    if isinstance(value, str) and "${" in value:
        def replace_env(match):
            return os.environ.get(match.group(1), match.group(0))
        return _ENV_REF.sub(replace_env, value)
    return value


_ENV_KEYS = {
    "BALANCE_LOG_BACKEND": "backend",
    "BALANCE_LOG_TABLE": "table",
    "BALANCE_LOG_DUCKDB_PATH": "duckdb_path",
    "BALANCE_LOG_READ_ONLY": "read_only",
    "BALANCE_LOG_POSTGRES_DSN": "postgres_dsn",
    "BALANCE_LOG_CONNECT_TIMEOUT": "connect_timeout_seconds",
    "BALANCE_LOG_TIMEOUT": "timeout_seconds",
    "BALANCE_LOG_LOG_LEVEL": "log_level",
    "BALANCE_LOG_JSON_LOGS": "json_logs",
}


def _env_overrides() -> dict[str, str]:
    return {
        key: os.environ[env_var]
        for env_var, key in _ENV_KEYS.items()
        if os.environ.get(env_var)
    }


def _coerce(values: dict[str, Any]) -> dict[str, Any]:
    """Turn YAML/env strings into the types StoreConfig expects."""
    out = dict(values)

    for key in ("read_only", "json_logs"):
        if key in out:
            out[key] = _as_bool(key, out[key])

    for key in ("connect_timeout_seconds", "timeout_seconds"):
        if key not in out:
            continue
        value = out[key]
        # "none" disables the per-call timeout
        if key == "timeout_seconds" and str(value).strip().lower() in ("none", "null"):
            out[key] = None
            continue
        try:
            out[key] = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{key} must be a number, got {value!r}") from e

    if "log_level" in out:
        out["log_level"] = str(out["log_level"]).upper()

    for key in ("backend", "table", "duckdb_path", "postgres_dsn"):
        if key in out:
            out[key] = str(out[key])

    return out


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"{key} must be a boolean, got {value!r}")
