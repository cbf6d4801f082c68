"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore", # Allow extra env vars without failing
    )

    # App
    app_name: str = "Playlist Bulk Ops"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    # Secret key MUST be provided via environment (e.g. SECRET_KEY in .env)
    secret_key: str
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 30

    # API
    api_prefix: str = "/api/v1"
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Database
    database_url: str = "sqlite+aiosqlite:///./playlist_ops.db"
    db_ssl_mode: str = "disable" # "require" for production
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # YouTube Data API
    youtube_api_base_url: str = "https://www.googleapis.com/youtube/v3"
    youtube_request_timeout_sec: float = 30.0

    # Transient-failure retrier
    retry_max_retries: int = 5
    retry_base_delay_ms: int = 300
    retry_max_delay_ms: int = 3000
    retry_jitter: float = 0.3

    # Pacing between remote calls inside one action
    pacing_add_delay_ms: int = 100
    pacing_insert_delay_ms: int = 120
    pacing_delete_delay_ms: int = 80
    bulk_concurrency_window: int = 1  # 1 = strictly sequential

    # Quota accounting (visibility only, never enforced)
    mutation_unit_cost: int = 50
    daily_quota_budget: int = 10_000
    quota_timezone: str = "America/Los_Angeles"

    # Retention
    usage_retention_days: int = 90
    idempotency_retention_days: int = 30
    retention_interval_seconds: int = 6 * 60 * 60

    # Stuck action supervision
    stale_action_sweep_enabled: bool = True
    stale_action_timeout_minutes: int = 30
    stale_action_sweep_interval_seconds: int = 300


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
