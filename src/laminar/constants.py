from __future__ import annotations

from pathlib import Path

DEFAULT_CONFIG_PATH = Path("laminar.toml")
ENV_PREFIX = "LAMINAR_"

DEFAULT_RC_URL = "http://localhost:5572"

GIB = 1024 * 1024 * 1024

__all__ = ["DEFAULT_CONFIG_PATH", "ENV_PREFIX", "DEFAULT_RC_URL", "GIB"]
