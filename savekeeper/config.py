"""Configuration management for Save Keeper.

A monitoring session is driven by a :class:`MonitorConfig` value whose
fields are all explicit and defaulted at construction. :class:`ConfigFile`
stores and retrieves that value as JSON in the platform-appropriate
application data directory.
"""

import json
import logging
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from savekeeper.errors import ConfigError
from savekeeper.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from savekeeper.platform_utils import (
    get_default_archive_dir,
)
from savekeeper.platform_utils import (
    get_log_path as _platform_log_path,
)

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL_MS = 500
DEFAULT_POLL_INTERVAL_MS = 2000
DEFAULT_DEBOUNCE_MS = 1000
DEFAULT_MAX_BACKUPS = 50


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


@dataclass(frozen=True)
class MonitorConfig:
    """Settings for one monitoring session."""

    source_path: str = ""
    archive_path: str = field(default_factory=lambda: str(get_default_archive_dir()))
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    debounce_ms: int = DEFAULT_DEBOUNCE_MS
    max_backups: int = DEFAULT_MAX_BACKUPS
    # Keep a ledger entry (without archive file) for duplicate captures
    record_duplicates: bool = False
    log_level: str = "INFO"
    max_log_size_mb: int = 10
    log_backup_count: int = 3

    def validate(self) -> None:
        """Raise :class:`ConfigError` if any value is out of range."""
        if not self.source_path:
            raise ConfigError("source_path is not set")
        if not self.archive_path:
            raise ConfigError("archive_path is not set")
        if self.poll_interval_ms < MIN_POLL_INTERVAL_MS:
            raise ConfigError(
                f"poll_interval_ms must be >= {MIN_POLL_INTERVAL_MS} "
                f"(got {self.poll_interval_ms})"
            )
        if self.debounce_ms < 0:
            raise ConfigError(f"debounce_ms must be >= 0 (got {self.debounce_ms})")
        if self.max_backups < 1:
            raise ConfigError(f"max_backups must be >= 1 (got {self.max_backups})")
        if self.max_log_size_mb < 1:
            raise ConfigError(
                f"max_log_size_mb must be >= 1 (got {self.max_log_size_mb})"
            )
        if self.log_backup_count < 0:
            raise ConfigError(
                f"log_backup_count must be >= 0 (got {self.log_backup_count})"
            )

    def is_configured(self) -> bool:
        """Return True when both the source file and archive are set."""
        return bool(self.source_path) and bool(self.archive_path)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MonitorConfig":
        """Build a config from *data*, ignoring unknown keys.

        Values are coerced to the field's type so a hand-edited file with
        ``"max_backups": "20"`` still loads.
        """
        known = {f.name: f for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                logger.debug("Ignoring unknown config key: %s", key)
                continue
            kwargs[key] = _coerce(known[key].type, key, value)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serialisable dict of all settings."""
        return asdict(self)

    def with_updates(self, **changes: Any) -> "MonitorConfig":
        """Return a copy with *changes* applied."""
        return replace(self, **changes)


def _coerce(field_type: Any, key: str, value: Any) -> Any:
    try:
        if field_type is bool:
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if field_type is int:
            return int(value)
        if field_type is str:
            return str(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for {key}: {value!r}") from exc
    return value


class ConfigFile:
    """JSON-backed store for a :class:`MonitorConfig`."""

    def __init__(self, path: Path | None = None):
        """Load config from *path*, falling back to the platform default."""
        self._path = path or get_config_path()
        self._config = MonitorConfig()
        self.load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def config(self) -> MonitorConfig:
        """Return the current configuration value."""
        return self._config

    # ---- persistence ----

    def load(self) -> MonitorConfig:
        """Load configuration from disk, applying defaults for missing keys."""
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
                if not isinstance(stored, dict):
                    raise ValueError("top-level JSON value is not an object")
                self._config = MonitorConfig.from_dict(stored)
                logger.info("Configuration loaded from %s", self._path)
            except (json.JSONDecodeError, OSError, ValueError, ConfigError) as exc:
                logger.warning("Could not read config (%s); using defaults.", exc)
                self._config = MonitorConfig()
        else:
            self._config = MonitorConfig()
            self.save()
            logger.info("Created default configuration at %s", self._path)
        return self._config

    def save(self) -> bool:
        """Persist the current configuration to disk. Returns True on success."""
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._config.to_dict(), fh, indent=2)
            logger.info("Configuration saved.")
            return True
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)
            return False

    def update(self, **changes: Any) -> MonitorConfig:
        """Apply *changes*, persist, and return the new configuration."""
        self._config = self._config.with_updates(**changes)
        self.save()
        return self._config
