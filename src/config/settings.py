"""
Service settings for the Autopilot HTTP service.

Settings are read from the environment once and cached. The behavioral
thresholds live in src/config/thresholds.py; this module only covers the
service shell (database, CORS, dev mode).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the API process."""

    dev_mode: bool
    database_url: str | None          # Async driver URL; None = in-memory profile repository
    cors_origins: tuple[str, ...]
    host: str
    port: int


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from environment variables."""
    origins = os.environ.get("AUTOPILOT_CORS_ORIGINS", "")
    return Settings(
        dev_mode=os.environ.get("AUTOPILOT_DEV_MODE") == "1",
        database_url=os.environ.get("AUTOPILOT_DATABASE_URL") or None,
        cors_origins=tuple(o.strip() for o in origins.split(",") if o.strip()),
        host=os.environ.get("AUTOPILOT_HOST", "0.0.0.0"),
        port=int(os.environ.get("AUTOPILOT_PORT", "8000")),
    )
