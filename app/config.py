"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "bagstore-payments"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    secret_key: str

    # API Server
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: List[str] = ["http://localhost:3000"]

    # Postgres
    database_url: str
    database_ssl: bool = False

    # Redis (webhook dedupe + celery broker)
    redis_url: str = "redis://localhost:6379/0"
    webhook_dedupe_ttl_seconds: int = 60 * 60 * 24
    redis_socket_timeout_seconds: float = 2.0

    # Payment gateway
    payment_gateway: Literal["stripe", "mock"] = "stripe"
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    gateway_timeout_seconds: float = 10.0

    # Payment rules
    default_currency: str = "inr"
    amount_tolerance: Decimal = Decimal("0.01")
    intent_freshness_seconds: int = 60 * 60
    stale_pending_hours: int = 24

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
