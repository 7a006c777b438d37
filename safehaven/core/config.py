"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development; the same
Settings class is read by the server (reconciler, lifecycle manager,
REST adapter) and by the field client (queue, sync engine).

Usage:
    from safehaven.core.config import settings
    print(settings.SYNC_INTERVAL_SECONDS)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "SafeHaven Sync"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://localhost:8000",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Record store ──
    RECORD_STORE_BACKEND: str = "memory"  # memory | sql
    DATABASE_URL: str = "sqlite+aiosqlite:///./safehaven.db"
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 5
    DATABASE_ECHO: bool = False  # log SQL queries

    # ── Redis (shared rate-limit counters, pub/sub) ──
    REDIS_URL: str = "redis://localhost:6379/0"

    # ── Notifications ──
    NOTIFICATION_BACKEND: str = "memory"  # memory | redis
    NOTIFICATION_CHANNEL_PREFIX: str = "safehaven"
    NOTIFICATION_TIMEOUT_SECONDS: float = 2.0

    # ── Rate limiting ──
    RATE_LIMIT_BACKEND: str = "memory"  # memory | redis
    RATE_LIMIT_MAX_REQUESTS: int = 60
    RATE_LIMIT_WINDOW_SECONDS: int = 60

    # ── Field client sync ──
    SERVER_BASE_URL: str = "http://localhost:8000"
    QUEUE_DATABASE_URL: str = "sqlite+aiosqlite:///./safehaven_queue.db"
    SYNC_INTERVAL_SECONDS: float = 30.0
    CONNECTIVITY_PROBE_URL: str = "https://www.google.com/generate_204"
    CONNECTIVITY_TIMEOUT_SECONDS: float = 3.0
    SERVER_CALL_TIMEOUT_SECONDS: float = 12.0
    SYNC_MAX_RETRIES: int = 3
    SYNC_BACKOFF_BASE_SECONDS: float = 2.0
    SYNC_BACKOFF_MAX_SECONDS: float = 300.0
    SYNC_MAX_CONCURRENT_TARGETS: int = 4
    SYNC_SHUTDOWN_DEADLINE_SECONDS: float = 15.0
    STALE_MUTATION_HOURS: float = 24.0

    # ── Client identity (supplied by the external auth layer) ──
    CLIENT_ACTOR_ID: Optional[str] = None
    CLIENT_ACTOR_ROLE: str = "shelter_operator"

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
