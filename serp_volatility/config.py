"""Runtime settings loaded from the environment and an optional .env file.

Nothing is read at import time: get_settings() loads .env from the project
root on first call and caches the result, so tests can patch os.environ and
call get_settings.cache_clear().

Environment variables:
    SERP_VOLATILITY_SUPABASE_URL     Supabase project URL (supabase store only)
    SERP_VOLATILITY_SUPABASE_KEY     Service key (supabase store only)
    SERP_VOLATILITY_SCHEMA           Postgres schema, default "serp_volatility"
    SERP_VOLATILITY_DEFAULT_TENANT   Tenant used when the CLI gets no --tenant-id
    SERP_VOLATILITY_LOG_LEVEL        Default "INFO"
    SERP_VOLATILITY_LOG_DIR          If set, logs are also written to a dated file
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_PROJECT_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_SCHEMA = "serp_volatility"
DEFAULT_LOG_LEVEL = "INFO"


@dataclass(frozen=True)
class Settings:
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None
    supabase_schema: str = DEFAULT_SCHEMA
    default_tenant_id: Optional[str] = None
    log_level: str = DEFAULT_LOG_LEVEL
    log_dir: Optional[Path] = None

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Read settings once per process. Existing env vars win over .env."""
    load_dotenv(_PROJECT_ROOT / ".env")

    log_dir = os.environ.get("SERP_VOLATILITY_LOG_DIR")
    return Settings(
        supabase_url=os.environ.get("SERP_VOLATILITY_SUPABASE_URL"),
        supabase_key=os.environ.get("SERP_VOLATILITY_SUPABASE_KEY"),
        supabase_schema=os.environ.get("SERP_VOLATILITY_SCHEMA", DEFAULT_SCHEMA),
        default_tenant_id=os.environ.get("SERP_VOLATILITY_DEFAULT_TENANT") or None,
        log_level=os.environ.get("SERP_VOLATILITY_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        log_dir=Path(log_dir) if log_dir else None,
    )
