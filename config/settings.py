"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Home Repair Dispatch"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

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
    REDIS_CONNECT_ATTEMPTS: int = 5

    # ── JWT (issued by the identity service) ─────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:19006"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Realtime fan-out ─────────────────────────────────────
    FANOUT_BACKEND: str = "redis"           # "redis" | "local"
    FANOUT_TIMEOUT_SECONDS: float = 2.0
    FANOUT_CHANNEL_PREFIX: str = "user_events"

    # ── Business Config ──────────────────────────────────────
    NEARBY_DEFAULT_RADIUS_KM: float = 10.0
    NEARBY_MAX_RADIUS_KM: float = 500.0
    NEARBY_RESULT_LIMIT: int = 50
    BOOKING_DATE_GRACE_MINUTES: int = 5
    REVIEW_COMMENT_MAX_LENGTH: int = 1000
    CURRENCY_LABEL: str = "Rs."

    @field_validator("FANOUT_BACKEND")
    @classmethod
    def validate_fanout_backend(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("redis", "local"):
            raise ValueError("FANOUT_BACKEND must be 'redis' or 'local'")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance."""
    return Settings()


settings = get_settings()
