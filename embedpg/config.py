"""User settings loading helpers."""

from __future__ import annotations

import os
from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, ValidationError

from .environment import RuntimeEnvironment, cached_environment, default_environment
from .models import DEFAULT_HOST, DEFAULT_SHUTDOWN_TIMEOUT, DEFAULT_STARTUP_TIMEOUT, PRODUCTION, Timeout

CONFIG_ENV_VAR = "EMBEDPG_CONFIG"
CONFIG_FILE = Path.home() / ".config" / "embedpg" / "config.toml"


class Settings(BaseModel):
    """Shape of the settings file."""

    version: str = str(PRODUCTION)
    host: str = DEFAULT_HOST
    cache_dir: Path | None = None
    startup_timeout: float = Field(default=DEFAULT_STARTUP_TIMEOUT, gt=0)
    shutdown_timeout: float = Field(default=DEFAULT_SHUTDOWN_TIMEOUT, gt=0)
    log_level: str = "WARNING"

    def timeout(self) -> Timeout:
        return Timeout(startup=self.startup_timeout, shutdown=self.shutdown_timeout)

    def environment(self) -> RuntimeEnvironment:
        """Runtime environment matching ``cache_dir``."""

        if self.cache_dir is not None:
            return cached_environment(self.cache_dir.expanduser())
        return default_environment()

    def with_overrides(self, **updates: object) -> Settings:
        """Return a copy with the non-``None`` updates applied."""

        return self.model_copy(update={key: value for key, value in updates.items() if value is not None})


def config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return CONFIG_FILE


def load_settings() -> Settings:
    """Load settings from disk; fall back to defaults if missing or invalid."""

    try:
        with config_path().open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return Settings()
    except (tomllib.TOMLDecodeError, OSError):
        return Settings()

    data = raw.get("embedpg", raw)
    if not isinstance(data, dict):
        return Settings()
    known = {key: value for key, value in data.items() if key in Settings.model_fields}
    try:
        return Settings(**known)
    except ValidationError:
        return Settings()


__all__ = ["CONFIG_ENV_VAR", "CONFIG_FILE", "Settings", "config_path", "load_settings"]
