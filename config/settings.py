"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Roadside Dispatch API"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300          # 5 minutes

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # ── Internal (payment collaborator) ──────────────────────
    INTERNAL_API_TOKEN: str = ""

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20
    REQUEST_CREATE_LIMIT_PER_HOUR: int = 20

    # ── Logging ──────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # ── Matching ─────────────────────────────────────────────
    MATCHING_RADIUS_KM: float = 10.0
    MATCHING_MAX_CANDIDATES: int = 10
    MATCHING_TIE_WINDOW_KM: float = 0.5

    # ── Membership ───────────────────────────────────────────
    FREE_PLAN_MAX_REQUESTS: int = 5
    FREE_PLAN_VALIDITY_DAYS: int = 365
    QUOTA_RESET_INTERVAL_DAYS: int = 30
    BASIC_PLAN_MAX_REQUESTS: int = 15
    PREMIUM_PLAN_MAX_REQUESTS: int = 25
    BILLING_CYCLE_DAYS_MONTHLY: int = 30
    BILLING_CYCLE_DAYS_YEARLY: int = 360

    # ── Dispatch / Chat ──────────────────────────────────────
    PROVIDER_QUEUE_LIMIT: int = 50
    CHAT_HISTORY_PAGE_SIZE: int = 50
    CHAT_MESSAGE_MAX_LENGTH: int = 2000

    # ── Fan-out ──────────────────────────────────────────────
    FANOUT_PUBLISH_ATTEMPTS: int = 3
    FANOUT_PUBLISH_TIMEOUT_SECONDS: float = 2.0

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance. Call this everywhere."""
    return Settings()


settings = get_settings()
