"""Configuration loading for agency-contacts.

Reads ``agency_contacts.toml``, resolves ``${VAR}`` environment references in
string values and returns a validated :class:`ContactsConfig`. Every section is
optional; a missing file yields the defaults.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "agency_contacts.toml"
DEFAULT_DB_NAME = "agency_contacts"

# Matches ${VAR_NAME}: letters, digits and underscores.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


class LogFormat(enum.StrEnum):
    TEXT = "text"
    JSON = "json"


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section.

    ``url`` wins when set; otherwise the connection comes from the
    ``DATABASE_URL`` / ``POSTGRES_*`` environment variables.
    """

    url: str | None = None
    name: str = DEFAULT_DB_NAME
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: LogFormat = LogFormat.TEXT
    log_root: str | None = None


@dataclass
class ReconcileConfig:
    """Batch reconciliation policy from the [reconcile] section.

    ``fallback_name_match`` enables the lower-confidence first+last name pass
    that ignores zip codes. ``create_missing_contacts`` lets the link backfill
    call the resolver for module records that match no existing contact.
    """

    fallback_name_match: bool = True
    create_missing_contacts: bool = False
    batch_size: int = 500


@dataclass
class QueryConfig:
    default_limit: int = 50
    max_limit: int = 200


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8400
    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:5173"])


@dataclass
class ContactsConfig:
    """Fully parsed configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)
    query: QueryConfig = field(default_factory=QueryConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively replace ``${VAR}`` references in strings with env var values."""
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _positive_int(section: dict, key: str, default: int, *, section_name: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"Invalid {section_name}.{key}: {raw!r}. Must be a positive integer.")
    return raw


def _bool(section: dict, key: str, default: bool, *, section_name: str) -> bool:
    raw = section.get(key, default)
    if not isinstance(raw, bool):
        raise ConfigError(f"Invalid {section_name}.{key}: {raw!r}. Must be true or false.")
    return raw


def _parse_database(data: dict) -> DatabaseConfig:
    section = _section(data, "database")
    url = section.get("url")
    if url is not None and not isinstance(url, str):
        raise ConfigError("database.url must be a string when set")
    name = str(section.get("name", DEFAULT_DB_NAME)).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")
    min_size = _positive_int(section, "min_pool_size", 2, section_name="database")
    max_size = _positive_int(section, "max_pool_size", 10, section_name="database")
    if min_size > max_size:
        raise ConfigError(
            f"database.min_pool_size ({min_size}) exceeds database.max_pool_size ({max_size})"
        )
    return DatabaseConfig(
        url=url or None,
        name=name,
        min_pool_size=min_size,
        max_pool_size=max_size,
    )


def _parse_logging(data: dict) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", "INFO")).upper()
    raw_format = section.get("format", LogFormat.TEXT.value)
    try:
        fmt = LogFormat(raw_format)
    except ValueError as exc:
        raise ConfigError(
            f"Invalid logging.format: {raw_format!r}. Expected one of: "
            + ", ".join(f.value for f in LogFormat)
        ) from exc
    log_root = section.get("log_root")
    return LoggingConfig(level=level, format=fmt, log_root=log_root)


def _parse_reconcile(data: dict) -> ReconcileConfig:
    section = _section(data, "reconcile")
    return ReconcileConfig(
        fallback_name_match=_bool(section, "fallback_name_match", True, section_name="reconcile"),
        create_missing_contacts=_bool(
            section, "create_missing_contacts", False, section_name="reconcile"
        ),
        batch_size=_positive_int(section, "batch_size", 500, section_name="reconcile"),
    )


def _parse_query(data: dict) -> QueryConfig:
    section = _section(data, "query")
    default_limit = _positive_int(section, "default_limit", 50, section_name="query")
    max_limit = _positive_int(section, "max_limit", 200, section_name="query")
    if default_limit > max_limit:
        raise ConfigError(
            f"query.default_limit ({default_limit}) exceeds query.max_limit ({max_limit})"
        )
    return QueryConfig(default_limit=default_limit, max_limit=max_limit)


def _parse_api(data: dict) -> ApiConfig:
    section = _section(data, "api")
    origins = section.get("cors_origins", ["http://localhost:5173"])
    if not isinstance(origins, list) or not all(isinstance(o, str) for o in origins):
        raise ConfigError("api.cors_origins must be a list of strings")
    return ApiConfig(
        host=str(section.get("host", "0.0.0.0")),
        port=_positive_int(section, "port", 8400, section_name="api"),
        cors_origins=origins,
    )


def parse_config(data: dict) -> ContactsConfig:
    """Build a :class:`ContactsConfig` from an already-decoded TOML mapping."""
    data = resolve_env_vars(data)
    return ContactsConfig(
        database=_parse_database(data),
        logging=_parse_logging(data),
        reconcile=_parse_reconcile(data),
        query=_parse_query(data),
        api=_parse_api(data),
    )


def load_config(path: Path | None = None) -> ContactsConfig:
    """Load and validate configuration.

    Parameters
    ----------
    path:
        A TOML file, or a directory containing ``agency_contacts.toml``.
        ``None`` returns the defaults.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    if path is None:
        return ContactsConfig()

    toml_path = Path(path)
    if toml_path.is_dir():
        toml_path = toml_path / DEFAULT_CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
