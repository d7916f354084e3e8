"""Process-wide connections, created once at startup."""

from dataclasses import dataclass
from typing import Any

import redis.asyncio as redis

from .core import Settings
from .database import Database
from .push import DisabledPushRelay, HttpPushRelay, PushRelay


@dataclass
class Runtime:
    """
    Connections shared by every request.

    One instance is built at process start and stored on
    ``app.state.runtime``; dependencies read it from the request.

    Attributes:
        database: Engine and session factory.
        push_relay: Client for the external push gateway.
        redis: Async Redis client backing the rate limiter, or ``None`` to
            run without rate limiting.
    """

    database: Database
    push_relay: PushRelay
    redis: Any = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Runtime":
        """Build the runtime described by the application settings."""
        if settings.PUSH_GATEWAY_URL:
            relay: PushRelay = HttpPushRelay(
                settings.PUSH_GATEWAY_URL,
                api_key=settings.PUSH_GATEWAY_KEY,
                timeout=settings.PUSH_TIMEOUT_SECONDS,
            )
        else:
            relay = DisabledPushRelay()
        return cls(
            database=Database(settings.DATABASE_URL),
            push_relay=relay,
            redis=redis.from_url(
                settings.REDIS_URL, encoding="utf-8", decode_responses=True
            ),
        )

    async def aclose(self) -> None:
        """Release Redis and database connections."""
        if self.redis is not None:
            await self.redis.aclose()
        self.database.dispose()
