"""Settings configuration for account rotation."""

import os
import tomllib
from enum import StrEnum
from pathlib import Path
from typing import Any

import orjson
import structlog
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from account_rotator.config.discovery import find_config_file, get_config_dir
from account_rotator.core.logging import setup_logging
from account_rotator.exceptions import ConfigurationError


__all__ = [
    "ConfigurationManager",
    "HealthSettings",
    "JsonConfigStore",
    "RotationSettings",
    "SelectionStrategy",
    "WaitSettings",
    "config_manager",
    "get_settings",
]


logger = structlog.get_logger(__name__)


class SelectionStrategy(StrEnum):
    """Policy used to pick the next active account."""

    STICKY = "sticky"
    ROUND_ROBIN = "round-robin"
    HYBRID = "hybrid"


class WaitSettings(BaseSettings):
    """Backoff wait applied before a forced rotation."""

    enabled: bool = Field(
        default=True,
        description="Pause before rotating away from a rate limited account",
    )

    initial_wait_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Wait before the first rotation; doubles per recent failure",
    )

    max_wait_seconds: float = Field(
        default=60.0,
        ge=0.0,
        description="Upper bound on the wait, also the length of a rate limit window",
    )

    max_failures_before_skip: int = Field(
        default=3,
        ge=0,
        description="Stop waiting once the current account has this many recent failures",
    )

    model_config = SettingsConfigDict(
        env_prefix="ROTATION__WAIT__",
        case_sensitive=False,
    )


class HealthSettings(BaseSettings):
    """Heuristic weights used by the health scorer."""

    rate_limit_window_penalty: int = Field(
        default=80,
        ge=0,
        le=100,
        description="Penalty while inside an active rate limit window",
    )

    recent_rate_limit_penalty: float = Field(
        default=30.0,
        ge=0.0,
        description="Penalty for a rate limit in the last hour, before decay",
    )

    recent_rate_limit_decay_per_minute: float = Field(
        default=0.5,
        ge=0.0,
        description="Points the recent rate limit penalty loses per elapsed minute",
    )

    failure_penalty: int = Field(
        default=10,
        ge=0,
        description="Penalty per failure within the failure TTL",
    )

    max_failure_penalty: int = Field(
        default=50,
        ge=0,
        le=100,
        description="Cap on the accumulated failure penalty",
    )

    recent_success_bonus: int = Field(
        default=10,
        ge=0,
        description="Bonus for a success within the last minute",
    )

    model_config = SettingsConfigDict(
        env_prefix="ROTATION__HEALTH__",
        case_sensitive=False,
    )


def _coerce_settings(value: Any, settings_class: type) -> Any:
    """Coerce value to settings class instance.

    Handles: None → default, dict → instance, passthrough existing instances.
    """
    if value is None:
        return settings_class()
    if isinstance(value, settings_class):
        return value
    if isinstance(value, dict):
        return settings_class(**value)
    if hasattr(value, "model_dump"):
        return settings_class(**value.model_dump())
    return value


class RotationSettings(BaseSettings):
    """
    Configuration settings for the rotation engine.

    Settings are loaded from environment variables and TOML or JSON
    configuration files. Configuration files are searched in the following order:
    1. .account_rotator.toml in current directory
    2. account_rotator.toml in current directory
    3. config.toml / config.json in the user config directory
    """

    model_config = SettingsConfigDict(
        env_prefix="ROTATION__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    strategy: SelectionStrategy = Field(
        default=SelectionStrategy.HYBRID,
        description="Account selection strategy: sticky, round-robin or hybrid",
    )

    pid_offset: bool = Field(
        default=False,
        description="Offset the initial account by process id to spread parallel processes",
    )

    wait: WaitSettings = Field(
        default_factory=WaitSettings,
        description="Backoff wait before rotating",
    )

    failure_ttl_seconds: int = Field(
        default=3600,
        ge=0,
        description="Failures older than this are forgotten",
    )

    soft_quota_threshold_percent: float = Field(
        default=90.0,
        ge=0.0,
        le=100.0,
        description="Failure rate at which an account is skipped by the hybrid strategy",
    )

    health: HealthSettings = Field(
        default_factory=HealthSettings,
        description="Health score weights",
    )

    accounts_path: Path | None = Field(
        default=None,
        description="Path to the credentials file",
    )

    debug: bool = Field(default=False, description="Enable debug logging")

    quiet: bool = Field(default=False, description="Only log warnings and errors")

    @field_validator("wait", mode="before")
    @classmethod
    def validate_wait(cls, v: Any) -> Any:
        return _coerce_settings(v, WaitSettings)

    @field_validator("health", mode="before")
    @classmethod
    def validate_health(cls, v: Any) -> Any:
        return _coerce_settings(v, HealthSettings)

    @field_validator("strategy", mode="before")
    @classmethod
    def normalize_strategy(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower().replace("_", "-")
        return v

    @property
    def log_level(self) -> str:
        """Log level implied by the debug and quiet flags."""
        if self.debug:
            return "DEBUG"
        if self.quiet:
            return "WARNING"
        return "INFO"

    @classmethod
    def load_config_file(cls, config_path: Path) -> dict[str, Any]:
        """Load a TOML or JSON configuration file.

        Raises:
            ValueError: If the file format is not supported or the content is invalid
        """
        suffix = config_path.suffix.lower()
        if suffix == ".toml":
            with config_path.open("rb") as f:
                data: Any = tomllib.load(f)
        elif suffix == ".json":
            data = orjson.loads(config_path.read_bytes())
        else:
            raise ValueError(f"Unsupported config file format: {suffix}")

        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain an object, got {type(data).__name__}")

        # Allow settings under a [rotation] table
        if isinstance(data.get("rotation"), dict):
            data = data["rotation"]
        return data

    @classmethod
    def from_config(
        cls, config_path: Path | str | None = None, **kwargs: Any
    ) -> "RotationSettings":
        """Create settings from a configuration file merged with overrides.

        Args:
            config_path: Path to configuration file. Falls back to the
                ROTATION_CONFIG_FILE env var, then to discovery.
            **kwargs: Values that take precedence over the file
        """
        if config_path is None:
            env_path = os.environ.get("ROTATION_CONFIG_FILE")
            config_path = Path(env_path) if env_path else find_config_file()

        config_data: dict[str, Any] = {}
        if config_path is not None:
            config_path = Path(config_path).expanduser()
            if config_path.exists():
                config_data = cls.load_config_file(config_path)
                logger.debug("config_file_loaded", path=str(config_path))

        return cls(**{**config_data, **kwargs})

    def to_file_dict(self) -> dict[str, Any]:
        """Serializable form for the config store."""
        return self.model_dump(mode="json", exclude_none=True)


class JsonConfigStore:
    """Config store backed by a JSON file (TOML files are read-only)."""

    def __init__(self, path: Path | None = None):
        self.path = Path(path or get_config_dir() / "config.json").expanduser()

    def load(self) -> RotationSettings:
        try:
            return RotationSettings.from_config(self.path)
        except (OSError, ValueError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

    def save(self, settings: RotationSettings) -> bool:
        if self.path.suffix.lower() != ".json":
            logger.error("config_save_unsupported_format", path=str(self.path))
            return False

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.path.write_bytes(
                orjson.dumps(settings.to_file_dict(), option=orjson.OPT_INDENT_2)
            )
        except OSError as e:
            logger.error("config_save_failed", path=str(self.path), error=str(e))
            return False

        logger.debug("config_saved", path=str(self.path))
        return True


class ConfigurationManager:
    """Centralized configuration management with explicit reload and updates."""

    def __init__(self, store: JsonConfigStore | None = None) -> None:
        self._store = store
        self._settings: RotationSettings | None = None
        self._logging_configured = False

    @property
    def store(self) -> JsonConfigStore:
        if self._store is None:
            self._store = JsonConfigStore()
        return self._store

    def load_settings(self) -> RotationSettings:
        """Load settings once and cache them."""
        if self._settings is None:
            self._settings = self.store.load()
        return self._settings

    def reload(self) -> RotationSettings:
        """Drop the cached settings and read them again."""
        self._settings = None
        return self.load_settings()

    def update(self, **changes: Any) -> RotationSettings:
        """Apply an explicit settings change and persist it.

        Nested sections (``wait``, ``health``) are merged field by field, so
        ``update(wait={"enabled": False})`` keeps the other wait settings.

        Raises:
            ConfigurationError: If the change does not validate or cannot be saved
        """
        current = self.load_settings()
        merged = current.model_dump()
        for key, value in changes.items():
            if isinstance(value, BaseModel):
                value = value.model_dump()
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        try:
            updated = RotationSettings(**merged)
        except ValueError as e:
            raise ConfigurationError(f"Invalid settings change: {e}") from e

        if not self.store.save(updated):
            raise ConfigurationError(
                "Failed to persist settings change",
                details={"changed": sorted(changes)},
            )
        self._settings = updated
        logger.info("settings_updated", changed=sorted(changes))
        return updated

    def setup_logging(self, json_logs: bool = False) -> None:
        """Configure logging once based on settings."""
        if self._logging_configured:
            return
        settings = self.load_settings()
        setup_logging(debug=settings.debug, quiet=settings.quiet, json_logs=json_logs)
        self._logging_configured = True

    def reset(self) -> None:
        """Reset configuration state (useful for testing)."""
        self._settings = None
        self._logging_configured = False


# Global configuration manager instance
config_manager = ConfigurationManager()


def get_settings(config_path: Path | str | None = None) -> RotationSettings:
    """Load settings with configuration file support.

    Raises:
        ConfigurationError: If the configuration cannot be loaded
    """
    try:
        return RotationSettings.from_config(config_path=config_path)
    except (OSError, ValueError, tomllib.TOMLDecodeError) as e:
        raise ConfigurationError(f"Configuration error: {e}") from e
