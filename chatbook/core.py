"""Application configuration and settings management.

This module defines the application settings loaded from environment
variables and provides a helper for accessing the cached settings.
"""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables.

    Attributes:
        DATABASE_URL: Database connection string.
        REDIS_URL: Redis connection URL for rate limiting.
        JWT_SECRET_KEY: Key used to verify identity tokens.
        JWT_ALGORITHM: Algorithm identity tokens are signed with.
        JWT_AUDIENCE: Expected ``aud`` claim, if the provider sets one.
        JWT_ISSUER: Expected ``iss`` claim, if the provider sets one.
        ALLOWED_ORIGINS: Allowed origins for CORS.
        LOG_LEVEL: Root logging level.
        PUSH_GATEWAY_URL: Push gateway endpoint. Empty disables push relay.
        PUSH_GATEWAY_KEY: Bearer key sent to the push gateway.
        PUSH_TIMEOUT_SECONDS: Timeout for a single push attempt.
        DELIVERY_TTL_ACKED_MINUTES: Retention once a message is delivered/read.
        DELIVERY_TTL_PENDING_HOURS: Retention while a message is unacknowledged.
        DELIVERY_TTL_FALLBACK_DAYS: Retention for unrecognised statuses.
        DELIVERY_SWEEP_INTERVAL_SECONDS: Expiry sweep period, 0 disables it.
        SYNC_PAGE_SIZE: Default page size for pending sync.
        SYNC_PAGE_SIZE_MAX: Upper bound for pending sync page size.
        CLAIM_BLOCK_OFFER_THRESHOLD: Rejections after which blocking is offered.
        MESSAGE_TEXT_MAX_LENGTH: Maximum stored message text length.
        SEND_RATE_LIMIT_PER_MINUTE: Message sends allowed per client a minute.
        CLAIM_RATE_LIMIT_PER_MINUTE: Phone claims allowed per client a minute.
        LEDGER_SYNC_RATE_LIMIT_PER_MINUTE: Ledger events relayed per client a minute.
        LEDGER_CURRENCY_LABEL: Currency prefix shown in ledger notifications.
    """

    DATABASE_URL: str = "sqlite:///./chatbook.db"
    REDIS_URL: str = "redis://localhost:6379"
    JWT_SECRET_KEY: str = "dev-secret"
    JWT_ALGORITHM: str = "HS256"
    JWT_AUDIENCE: str | None = None
    JWT_ISSUER: str | None = None
    ALLOWED_ORIGINS: List[str] = ["*"]
    LOG_LEVEL: str = "INFO"
    PUSH_GATEWAY_URL: str = ""
    PUSH_GATEWAY_KEY: str = ""
    PUSH_TIMEOUT_SECONDS: float = 10.0
    DELIVERY_TTL_ACKED_MINUTES: int = 10
    DELIVERY_TTL_PENDING_HOURS: int = 48
    DELIVERY_TTL_FALLBACK_DAYS: int = 14
    DELIVERY_SWEEP_INTERVAL_SECONDS: int = 60
    SYNC_PAGE_SIZE: int = 100
    SYNC_PAGE_SIZE_MAX: int = 200
    CLAIM_BLOCK_OFFER_THRESHOLD: int = 2
    MESSAGE_TEXT_MAX_LENGTH: int = 4000
    SEND_RATE_LIMIT_PER_MINUTE: int = 60
    CLAIM_RATE_LIMIT_PER_MINUTE: int = 5
    LEDGER_SYNC_RATE_LIMIT_PER_MINUTE: int = 60
    LEDGER_CURRENCY_LABEL: str = "Rs"

    class Config:
        """Pydantic configuration for loading environment variables."""

        env_file = ".env"
        extra = "allow"


@lru_cache()
def get_settings() -> Settings:
    """Return cached application settings.

    The settings object is cached to prevent reloading environment
    variables multiple times during application lifetime.
    """

    return Settings()
