"""Runtime settings.

Settings are resolved in layers, highest priority first: constructor
arguments, ``WALLAVAULT_*`` environment variables, ``<config_dir>/settings.json``,
field defaults.

Changes:
  - 2026-10-19: Settings is a pydantic-settings BaseSettings; settings.json is a
    settings source.
  - 2026-10-11: Added transport_policy and key_backend.
  - 2026-10-04: Initial settings model.
"""

from __future__ import annotations

import json
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from wallavault import lifecycle

logger = logging.getLogger(__name__)

ENV_PREFIX = "WALLAVAULT_"
SETTINGS_FILENAME = "settings.json"

_VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class TransportPolicy(str, Enum):
    """How ``validate_config`` treats a non-HTTPS server URL."""

    HARDENED = "hardened"  # plain HTTP is an error
    PERMISSIVE = "permissive"  # plain HTTP is a warning


class KeyBackend(str, Enum):
    STORE = "store"  # raw key co-located with the ciphertext (fallback)
    KEYRING = "keyring"  # OS key store via the keyring package


def get_config_dir() -> Path:
    """Get/create the wallavault config directory (~/.wallavault by default)."""
    override = os.getenv(f"{ENV_PREFIX}CONFIG_DIR")
    d = Path(override).expanduser() if override else Path.home() / ".wallavault"
    d.mkdir(parents=True, exist_ok=True)
    return d


class SettingsFileSource(PydanticBaseSettingsSource):
    """Values from ``<config_dir>/settings.json``; an unreadable file is ignored."""

    def __init__(self, settings_cls: type[BaseSettings], config_dir: Path):
        super().__init__(settings_cls)
        self.path = config_dir / SETTINGS_FILENAME
        self._values = self._read()

    def _read(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: expected a JSON object", self.path)
            return {}
        return data

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        # config_dir locates the file, so the file cannot move it
        return {
            name: value
            for name, value in self._values.items()
            if name in self.settings_cls.model_fields and name != "config_dir"
        }


class Settings(BaseSettings):
    """Process-wide configuration for the credential and session layer."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    config_dir: Path = Field(default_factory=get_config_dir)
    storage_area: str = Field(default="local", description="Storage area name")
    key_namespace: str = Field(default="", description="Prefix for stored record keys")

    request_timeout: float = Field(default=30.0, description="Per-request timeout (s)")
    max_attempts: int = Field(default=3, description="Total attempts per request")
    backoff_base: float = Field(default=1.0, description="First retry delay (s)")
    backoff_jitter: bool = Field(default=False, description="Randomize retry delays")
    user_agent: str = Field(default="wallavault/0.3 (+https://wallabag.org)")

    transport_policy: TransportPolicy = TransportPolicy.HARDENED
    key_backend: KeyBackend = KeyBackend.STORE
    keyring_service: str = "wallavault"

    log_level: str = "INFO"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        init_kwargs = getattr(init_settings, "init_kwargs", {})
        config_dir = Path(init_kwargs.get("config_dir") or get_config_dir())
        return (init_settings, env_settings, SettingsFileSource(settings_cls, config_dir))

    @field_validator("request_timeout", "backoff_base")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @field_validator("max_attempts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be >= 1")
        return v

    @field_validator("log_level")
    @classmethod
    def _valid_level(cls, v: str) -> str:
        if v.upper() not in _VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {sorted(_VALID_LOG_LEVELS)}")
        return v.upper()

    @classmethod
    def load(cls, config_dir: Path | None = None) -> Settings:
        """Build settings for *config_dir* (default: ``get_config_dir()``)."""
        return cls(config_dir=config_dir) if config_dir else cls()

    def save(self) -> Path:
        """Write non-default settings to ``settings.json``."""
        path = self.config_dir / SETTINGS_FILENAME
        data = self.model_dump(mode="json", exclude={"config_dir"}, exclude_defaults=True)
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        return path


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the cached process settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
        lifecycle.register("settings", reset=reset_settings)
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
