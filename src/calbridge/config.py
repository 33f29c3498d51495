"""calbridge configuration loading and validation.

Reads calbridge.toml from a config directory, parses all sections, and
returns a validated CalbridgeConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from calbridge.calendar.integrations.oauth import OAuthAppCredentials
from calbridge.calendar.mappers.base import DEFAULT_TITLE, MappingOptions
from calbridge.calendar.meeting_links import DEFAULT_MEETING_LINK_DOMAINS
from calbridge.calendar.models import CalendarProviderKind
from calbridge.calendar.reconciler import DEFAULT_REFETCH_WINDOW, ReconcilerConfig

CONFIG_FILENAME = "calbridge.toml"
DEFAULT_SERVICE_NAME = "calbridge"

# Providers that refresh OAuth tokens and therefore need app credentials.
OAUTH_PROVIDERS: tuple[CalendarProviderKind, ...] = (
    CalendarProviderKind.GOOGLE,
    CalendarProviderKind.OFFICE,
)

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when calbridge configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [calbridge.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from [calbridge.db].

    ``url`` wins when set; otherwise connection parameters come from the
    environment (see ``calbridge.db.Database.from_env``).
    """

    url: str | None = None
    table: str = "connected_calendars"


@dataclass
class CalbridgeConfig:
    """Parsed and validated calbridge configuration."""

    name: str = DEFAULT_SERVICE_NAME
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    providers: dict[CalendarProviderKind, OAuthAppCredentials] = field(default_factory=dict)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
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
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{path} must be a TOML table")
    return value


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid calbridge.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    log_root = section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("calbridge.logging.log_root must be a string when set")
    return LoggingConfig(level=log_level, format=log_format, log_root=log_root)


def _parse_mapping(section: dict[str, Any]) -> MappingOptions:
    default_title = section.get("default_title", DEFAULT_TITLE)
    if not isinstance(default_title, str) or not default_title.strip():
        raise ConfigError("calbridge.mapping.default_title must be a non-empty string")

    raw_domains = section.get("meeting_link_domains")
    if raw_domains is None:
        domains = DEFAULT_MEETING_LINK_DOMAINS
    elif isinstance(raw_domains, list) and all(isinstance(d, str) for d in raw_domains):
        domains = tuple(d.strip().lower() for d in raw_domains if d.strip())
    else:
        raise ConfigError("calbridge.mapping.meeting_link_domains must be a list of strings")

    return MappingOptions(default_title=default_title.strip(), meeting_link_domains=domains)


def _parse_reconciler(section: dict[str, Any], mapping: MappingOptions) -> ReconcilerConfig:
    default_minutes = int(DEFAULT_REFETCH_WINDOW.total_seconds() // 60)
    raw_minutes = section.get("refetch_window_minutes", default_minutes)
    if isinstance(raw_minutes, bool) or not isinstance(raw_minutes, int) or raw_minutes <= 0:
        raise ConfigError(
            f"Invalid calbridge.reconciler.refetch_window_minutes: {raw_minutes!r}. "
            "Must be a positive integer."
        )
    etag_precondition = section.get("etag_precondition", False)
    if not isinstance(etag_precondition, bool):
        raise ConfigError("calbridge.reconciler.etag_precondition must be a boolean")
    return ReconcilerConfig(
        refetch_window=timedelta(minutes=raw_minutes),
        etag_precondition=etag_precondition,
        mapping=mapping,
    )


def _parse_providers(section: dict[str, Any]) -> dict[CalendarProviderKind, OAuthAppCredentials]:
    providers: dict[CalendarProviderKind, OAuthAppCredentials] = {}
    for key, value in section.items():
        try:
            kind = CalendarProviderKind(key)
        except ValueError as exc:
            raise ConfigError(f"Unknown calendar provider in calbridge.providers: {key!r}") from exc
        if kind not in OAUTH_PROVIDERS:
            raise ConfigError(f"calbridge.providers.{key} does not take OAuth app credentials")
        if not isinstance(value, dict):
            raise ConfigError(f"calbridge.providers.{key} must be a TOML table")
        client_id = value.get("client_id")
        client_secret = value.get("client_secret")
        if not isinstance(client_id, str) or not client_id.strip():
            raise ConfigError(f"Missing required field: calbridge.providers.{key}.client_id")
        if not isinstance(client_secret, str) or not client_secret.strip():
            raise ConfigError(f"Missing required field: calbridge.providers.{key}.client_secret")
        providers[kind] = OAuthAppCredentials(
            client_id=client_id.strip(),
            client_secret=client_secret.strip(),
        )
    return providers


def parse_config(data: dict[str, Any]) -> CalbridgeConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    section = data.get("calbridge")
    if not isinstance(section, dict):
        raise ConfigError("Missing [calbridge] section in config")

    name = section.get("name", DEFAULT_SERVICE_NAME)
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("calbridge.name must be a non-empty string")

    logging_config = _parse_logging(_section(section, "logging", "calbridge.logging"))
    mapping = _parse_mapping(_section(section, "mapping", "calbridge.mapping"))
    reconciler = _parse_reconciler(
        _section(section, "reconciler", "calbridge.reconciler"),
        mapping,
    )
    providers = _parse_providers(_section(section, "providers", "calbridge.providers"))

    db_section = _section(section, "db", "calbridge.db")
    db_url = db_section.get("url")
    if db_url is not None and (not isinstance(db_url, str) or not db_url.strip()):
        raise ConfigError("calbridge.db.url must be a non-empty string when set")
    db_table = db_section.get("table", "connected_calendars")
    if not isinstance(db_table, str) or not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_.]*", db_table):
        raise ConfigError(f"Invalid calbridge.db.table: {db_table!r}")

    return CalbridgeConfig(
        name=name.strip(),
        logging=logging_config,
        reconciler=reconciler,
        providers=providers,
        db=DatabaseConfig(url=db_url.strip() if db_url else None, table=db_table),
    )


def load_config(config_dir: Path) -> CalbridgeConfig:
    """Load and validate a calbridge.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
