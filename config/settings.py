"""Global configuration.

Every operator-tunable value is read from the ``.env`` file or the process
environment at startup and exposed through the ``settings`` instance below.

Usage:
    1. Copy ``.env.example`` to ``.env`` and adjust values
    2. Or export the variables directly (names are case-insensitive)
"""
from typing import Dict

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings - every field may be overridden via .env or env vars"""

    # ========== Database ==========
    database_url: str = "sqlite:///data/pipeline.db"

    # ========== Web surface ==========
    web_host: str = "0.0.0.0"
    web_port: int = 8080
    cron_secret: str = ""
    # token -> actor id, consumed by the default session authenticator
    session_tokens: Dict[str, str] = {}
    # actor id -> role (owner / admin / vanzator / receptie / tehnician)
    actor_roles: Dict[str, str] = {}

    # ========== Board cache ==========
    cache_memory_ttl_seconds: int = 60
    cache_session_ttl_seconds: int = 900
    cache_session_ttl_sales_seconds: int = 120
    cache_session_max_bytes: int = 4 * 1024 * 1024
    cache_scope: str = "server"
    # threads refreshing boards served from layer 2; 0 disables refreshes
    board_refresh_workers: int = 2
    directory_ttl_seconds: int = 60

    # ========== Time-trigger rules ==========
    courier_aging_hours: int = 24
    # Same rule, two entry points: the scheduled sweep and the board-open check
    package_unclaimed_cron_hours: int = 48
    package_unclaimed_on_access_hours: int = 36
    followup_window_hours: int = 24
    no_deal_archive_hours: int = 24

    # ========== Scanner ==========
    scan_max_workers: int = 4
    on_access_timeout_ms: int = 300
    sweep_interval_minutes: int = 60
    nightly_sweep_hour: int = 23
    nightly_sweep_minute: int = 59

    # ========== Invoicing ==========
    invoice_number_prefix: str = "F"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()
