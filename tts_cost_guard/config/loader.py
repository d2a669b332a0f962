"""
Configuration management and loading.

Handles application settings and the logging setup. Policy tunables such as
caps, per-user limits and the fallback provider live in the ``tts_config``
table instead; this file only covers how the process itself runs.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from tts_cost_guard.core.errors import ConfigError
from tts_cost_guard.storage.db import DEFAULT_DB_PATH

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class FlagCacheSettings:
    """How long flag and config reads may be served from memory."""
    cache_ttl_seconds: float = 5.0

    def __post_init__(self):
        if self.cache_ttl_seconds < 0:
            raise ConfigError("cache_ttl_seconds cannot be negative")


@dataclass(frozen=True)
class NotificationSettings:
    """Delivery knobs for Slack and e-mail alerts."""
    slack_timeout_seconds: float = 10.0
    dashboard_url: str = "https://tardeo.app/admin/tts-monitor"
    email_from: str = "TTS Alerts <alerts@tardeo.app>"
    resend_api_key_env: str = "RESEND_API_KEY"

    def __post_init__(self):
        if self.slack_timeout_seconds <= 0:
            raise ConfigError("slack_timeout_seconds must be > 0")
        if not self.email_from.strip():
            raise ConfigError("email_from cannot be empty")


@dataclass(frozen=True)
class MonitorSettings:
    """Budget monitor run settings."""
    lease_ttl_seconds: int = 300

    def __post_init__(self):
        if self.lease_ttl_seconds <= 0:
            raise ConfigError("lease_ttl_seconds must be > 0")


@dataclass(frozen=True)
class GuardSettings:
    """Complete process configuration."""
    db_path: str = DEFAULT_DB_PATH
    flags: FlagCacheSettings = field(default_factory=FlagCacheSettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    log_level: str = "INFO"

    def __post_init__(self):
        if self.log_level not in _LOG_LEVELS:
            raise ConfigError(f"log level must be one of: {sorted(_LOG_LEVELS)}")


def default_settings() -> GuardSettings:
    """Settings used when no configuration file is given."""
    return GuardSettings()


def load_settings(path: Optional[str] = None) -> GuardSettings:
    """Load and validate settings from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys
    and wrongly typed values are rejected instead of ignored.

    Args:
        path: Path to YAML configuration file; None returns the defaults

    Returns:
        Validated GuardSettings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ConfigError: If configuration is invalid (a ValueError)
    """
    if path is None:
        return default_settings()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in settings file {path}: {e}")

    if not raw_config:
        raise ConfigError("Settings file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigError("Settings file must contain a mapping")

    _reject_unknown(raw_config, {'database', 'flags', 'notifications', 'monitor', 'logging'}, "settings")

    database = _section(raw_config, 'database', {'path'})
    flags = _section(raw_config, 'flags', {'cache_ttl_seconds'})
    notifications = _section(
        raw_config,
        'notifications',
        {'slack_timeout_seconds', 'dashboard_url', 'email_from', 'resend_api_key_env'},
    )
    monitor = _section(raw_config, 'monitor', {'lease_ttl_seconds'})
    logging_section = _section(raw_config, 'logging', {'level'})

    db_path = database.get('path', DEFAULT_DB_PATH)
    if not isinstance(db_path, str) or not db_path.strip():
        raise ConfigError("'database.path' must be a non-empty string")

    defaults = NotificationSettings()
    return GuardSettings(
        db_path=db_path,
        flags=FlagCacheSettings(
            cache_ttl_seconds=_number(flags, 'cache_ttl_seconds', 5.0, "flags"),
        ),
        notifications=NotificationSettings(
            slack_timeout_seconds=_number(notifications, 'slack_timeout_seconds', 10.0, "notifications"),
            dashboard_url=_string(notifications, 'dashboard_url', defaults.dashboard_url, "notifications"),
            email_from=_string(notifications, 'email_from', defaults.email_from, "notifications"),
            resend_api_key_env=_string(
                notifications, 'resend_api_key_env', defaults.resend_api_key_env, "notifications"
            ),
        ),
        monitor=MonitorSettings(
            lease_ttl_seconds=int(_number(monitor, 'lease_ttl_seconds', 300, "monitor")),
        ),
        log_level=_string(logging_section, 'level', "INFO", "logging").upper(),
    )


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Attach a fresh console handler to the package logger.

    Any handler from an earlier call is replaced, so the handler always
    writes to the current stderr.

    Args:
        level: Log level name

    Returns:
        The package-level logger
    """
    logger = logging.getLogger("tts_cost_guard")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    return logger


def _reject_unknown(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ConfigError(f"Unknown keys in {path}: {unknown_keys}")


def _section(raw_config: Dict[str, Any], name: str, allowed: set) -> Dict[str, Any]:
    """Return an optional mapping section after rejecting unknown keys."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"'{name}' must be a dictionary")
    _reject_unknown(data, allowed, name)
    return data


def _number(data: Dict[str, Any], key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    # bool is an int subclass; True is not a valid timeout
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"'{key}' in {path} must be a number")
    return float(value)


def _string(data: Dict[str, Any], key: str, default: str, path: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"'{key}' in {path} must be a string")
    return value
