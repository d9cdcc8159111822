from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from .constants import DEFAULT_CONFIG_PATH, ENV_PREFIX


@dataclass(frozen=True, slots=True)
class Settings:
    """Process settings sourced from environment variables."""

    config_path: Path = DEFAULT_CONFIG_PATH
    rc_url: str | None = None
    log_level: str = "INFO"


def _read_settings() -> Settings:
    config_env = os.getenv(f"{ENV_PREFIX}CONFIG_PATH")
    rc_url = os.getenv(f"{ENV_PREFIX}RC_URL") or None
    log_level = os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "INFO").strip().upper() or "INFO"
    config_path = Path(config_env) if config_env else DEFAULT_CONFIG_PATH
    return Settings(config_path=config_path, rc_url=rc_url, log_level=log_level)


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return _read_settings()


__all__ = ["Settings", "get_settings"]
