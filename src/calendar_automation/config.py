"""Engine configuration loading and validation.

Reads ``automation.toml``, resolves ``${VAR}`` environment references, and
returns a validated :class:`AutomationConfig`.  Every threshold the engine
applies (audit cap, cooldown, tick interval) comes from here.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "automation.toml"

# Pattern matching ${VAR_NAME}.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_TABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class SchedulerConfig:
    """[automation.scheduler]"""

    tick_interval_seconds: float = 60.0
    relative_window_seconds: float | None = None
    marker_retention_hours: float = 48.0

    @property
    def effective_relative_window_seconds(self) -> float:
        if self.relative_window_seconds is None:
            return self.tick_interval_seconds
        return self.relative_window_seconds


@dataclass
class AuditConfig:
    max_entries_per_rule: int = 1000


@dataclass
class RetroactiveConfig:
    cooldown_seconds: float = 60.0
    max_concurrency: int = 8


@dataclass
class WebhookConfig:
    timeout_seconds: float = 10.0
    user_agent: str = "CalendarAutomation/1.0"


@dataclass
class LoggingConfig:
    """Logging configuration from [automation.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class DatabaseConfig:
    """[automation.db]; ``dsn`` unset means the in-memory audit log is used."""

    dsn: str | None = None
    audit_table: str = "automation_audit_log"


@dataclass
class AutomationConfig:
    name: str = "calendar-automation"
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    retroactive: RetroactiveConfig = field(default_factory=RetroactiveConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings; other values are returned unchanged.

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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)} "
            f"(original: {s!r})"
        )
    return result


def _section(parent: dict, name: str) -> dict:
    value = parent.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"automation.{name} must be a table")
    return value


def _positive_number(section: dict, key: str, where: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        raise ConfigError(f"{where}.{key} must be a positive number, got {value!r}")
    return float(value)


def _positive_int(section: dict, key: str, where: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{where}.{key} must be a positive integer, got {value!r}")
    return value


def _parse_scheduler(section: dict) -> SchedulerConfig:
    where = "automation.scheduler"
    window = section.get("relative_window_seconds")
    if window is not None:
        window = _positive_number(section, "relative_window_seconds", where, 0)
    return SchedulerConfig(
        tick_interval_seconds=_positive_number(section, "tick_interval_seconds", where, 60.0),
        relative_window_seconds=window,
        marker_retention_hours=_positive_number(section, "marker_retention_hours", where, 48.0),
    )


def _parse_logging(section: dict) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"automation.logging.level must be one of {', '.join(_LOG_LEVELS)}")
    fmt = str(section.get("format", "text"))
    if fmt not in ("text", "json"):
        raise ConfigError("automation.logging.format must be 'text' or 'json'")
    log_file = section.get("log_file")
    if log_file is not None and not isinstance(log_file, str):
        raise ConfigError("automation.logging.log_file must be a string when set")
    return LoggingConfig(level=level, format=fmt, log_file=log_file or None)


def _parse_db(section: dict) -> DatabaseConfig:
    dsn = section.get("dsn")
    if dsn is not None and (not isinstance(dsn, str) or not dsn.strip()):
        raise ConfigError("automation.db.dsn must be a non-empty string when set")
    table = str(section.get("audit_table", "automation_audit_log")).strip()
    if _TABLE_NAME_PATTERN.fullmatch(table) is None:
        raise ConfigError(
            f"Invalid automation.db.audit_table: {table!r}. Expected an SQL identifier."
        )
    return DatabaseConfig(dsn=dsn.strip() if dsn else None, audit_table=table)


def parse_config(data: dict[str, Any]) -> AutomationConfig:
    """Validate an already-parsed TOML document."""
    data = resolve_env_vars(data)
    section = data.get("automation", {})
    if not isinstance(section, dict):
        raise ConfigError("[automation] must be a table")

    name = str(section.get("name", "calendar-automation")).strip()
    if not name:
        raise ConfigError("automation.name must be a non-empty string")

    audit = _section(section, "audit")
    retroactive = _section(section, "retroactive")
    webhook = _section(section, "webhook")
    user_agent = webhook.get("user_agent", "CalendarAutomation/1.0")
    if not isinstance(user_agent, str) or not user_agent.strip():
        raise ConfigError("automation.webhook.user_agent must be a non-empty string")

    return AutomationConfig(
        name=name,
        scheduler=_parse_scheduler(_section(section, "scheduler")),
        audit=AuditConfig(
            max_entries_per_rule=_positive_int(
                audit, "max_entries_per_rule", "automation.audit", 1000
            )
        ),
        retroactive=RetroactiveConfig(
            cooldown_seconds=_positive_number(
                retroactive, "cooldown_seconds", "automation.retroactive", 60.0
            ),
            max_concurrency=_positive_int(
                retroactive, "max_concurrency", "automation.retroactive", 8
            ),
        ),
        webhook=WebhookConfig(
            timeout_seconds=_positive_number(
                webhook, "timeout_seconds", "automation.webhook", 10.0
            ),
            user_agent=user_agent.strip(),
        ),
        logging=_parse_logging(_section(section, "logging")),
        db=_parse_db(_section(section, "db")),
    )


def load_config(path: Path) -> AutomationConfig:
    """Load and validate an ``automation.toml``.

    *path* may be the file itself or a directory containing it.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or has invalid values.
    """
    path = Path(path)
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
    return parse_config(data)
