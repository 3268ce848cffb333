"""
Application configuration using pydantic-settings.
Loads environment variables from .env file.

Nested config groups are env-overridable via the double-underscore
delimiter, e.g.:
    RECONCILER__STALE_THRESHOLD_SECONDS=1800
    INGESTION__WORKER_COUNT=8
    CACHE__BACKEND=redis
    STRIPE__SECRET_KEY=sk_live_...
"""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReconcilerConfig(BaseModel):
    """Merge and read-path fallback parameters."""

    # Local records older than this are re-read from the provider on access
    stale_threshold_seconds: int = 3600
    # Budget for a single provider call made from the read path
    gateway_timeout_seconds: float = 10.0
    # Used to estimate a period end when neither snapshot nor plan carry one
    default_interval_unit: Literal["day", "week", "month", "year"] = "month"
    default_interval_count: int = 1


class IngestionConfig(BaseModel):
    """Provider notification delivery parameters."""

    max_attempts: int = 3
    backoff_seconds: list[float] = Field(default_factory=lambda: [60.0, 300.0, 900.0])
    attempt_timeout_seconds: float = 120.0
    worker_count: int = 4
    # Re-read subscription objects from the provider instead of trusting the
    # (possibly old) copy embedded in the notification
    refetch_on_event: bool = True


class CacheConfig(BaseModel):
    """Read-through cache configuration."""

    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "subsync"
    ttl_short_seconds: int = 300      # summary, subscription, access
    ttl_medium_seconds: int = 600     # invoices, membership history
    ttl_long_seconds: int = 3600      # plan listing


class StripeConfig(BaseModel):
    """Stripe credentials and checkout redirect targets."""

    secret_key: str = ""
    webhook_secret: str = ""
    checkout_success_url: str = "http://localhost:3000/?payment=success"
    checkout_cancel_url: str = "http://localhost:3000/pricing?payment=cancelled"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Supabase (in-memory stores are used when unset)
    supabase_url: str = ""
    supabase_secret_key: str = ""
    subscriptions_table: str = "subscriptions"
    accounts_table: str = "billing_accounts"
    plans_table: str = "plans"
    failed_events_table: str = "failed_provider_events"

    # App Settings
    debug: bool = False
    cors_origins: list[str] = ["http://localhost:3000"]

    # Nested config groups (env-overridable via SECTION__KEY format)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    stripe: StripeConfig = Field(default_factory=StripeConfig)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
