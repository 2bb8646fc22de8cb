"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "HomeServe Marketplace"
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
    REDIS_MAX_CONNECTIONS: int = 50

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Razorpay ─────────────────────────────────────────────
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_FAIL_MAX: int = 5
    RAZORPAY_RESET_TIMEOUT: int = 60

    # ── Firebase ─────────────────────────────────────────────
    FIREBASE_CREDENTIALS_PATH: str = "./config/firebase-credentials.json"
    FIREBASE_PROJECT_ID: str = ""

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"

    # ── Rate Limiting ────────────────────────────────────────
    RATE_LIMIT_UNAUTH_PER_MINUTE: int = 20

    # ── Pricing & Settlement ─────────────────────────────────
    ADVANCE_PAYMENT_PERCENT: float = 30.0
    PLATFORM_COMMISSION_PERCENT: float = 15.0
    GST_PERCENT: float = 18.0
    OVERTIME_BLOCK_MINUTES: int = 15
    OVERTIME_BLOCK_PERCENT: float = 10.0
    PLATFORM_WALLET_USER_ID: Optional[str] = None  # Falls back to first SUPER_ADMIN

    # ── Cancellation refunds ─────────────────────────────────
    REFUND_FULL_WINDOW_HOURS: float = 24.0
    REFUND_PARTIAL_WINDOW_HOURS: float = 2.0
    REFUND_EARLY_PERCENT: float = 90.0
    REFUND_LATE_PERCENT: float = 50.0

    # ── Matching & Field Operations ──────────────────────────
    ARRIVAL_GEOFENCE_KM: float = 0.5
    DEFAULT_SERVICE_RADIUS_KM: float = 10.0
    MATCHING_MAX_CANDIDATES: int = 20
    STALE_SEARCH_MINUTES: int = 10
    ABANDONED_BOOKING_MINUTES: int = 60

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance — call this everywhere."""
    return Settings()


settings = get_settings()
