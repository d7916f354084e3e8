"""
Main application entry point for the chatbook backend.

This module builds the FastAPI application: JSON logging, request logging
middleware, CORS, structured error handlers, the rate limiter with its
Redis backend, the delivery expiry sweeper, and the routers for users,
phone claims and messages.

Modules:
- FastAPI: Web framework
- CORSMiddleware: Middleware for handling CORS
- FastAPILimiter: Rate limiting
- fakeredis.aioredis: Fake Redis for offline development
- chatbook.runtime: Database, push relay and Redis connections
- chatbook.users: Users router
- chatbook.phone_claims: Phone claims router
- chatbook.messages: Messages router
- chatbook.ledger_sync: Shared ledger relay router
- chatbook.core: Application settings
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fakeredis.aioredis import FakeRedis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi_limiter import FastAPILimiter

from chatbook import ledger_sync, messages, phone_claims, users
from chatbook.core import get_settings
from chatbook.delivery import run_expiry_sweeper
from chatbook.errors import register_exception_handlers
from chatbook.logging_utils import RequestLoggingMiddleware, setup_logging
from chatbook.runtime import Runtime

settings = get_settings()
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger("chatbook")


async def init_rate_limiter(runtime: Runtime) -> None:
    """
    Initialize the rate limiter with the runtime's Redis backend.

    Falls back to FakeRedis if Redis is unavailable (e.g. offline
    development). A runtime without Redis runs without rate limiting.
    """
    if runtime.redis is None:
        return
    try:
        await FastAPILimiter.init(runtime.redis)
    except Exception:
        logger.warning("Redis unavailable, rate limiting with in-memory fallback")
        await FastAPILimiter.init(FakeRedis())


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the FastAPI application around ``runtime``.

    Args:
        runtime (Runtime | None): Shared connections. Built from the
            application settings when omitted.

    Returns:
        FastAPI: Configured application.
    """
    runtime = runtime or Runtime.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        runtime.database.create_all()
        await init_rate_limiter(runtime)

        sweeper = None
        if settings.DELIVERY_SWEEP_INTERVAL_SECONDS > 0:
            sweeper = asyncio.create_task(
                run_expiry_sweeper(runtime.database, settings.DELIVERY_SWEEP_INTERVAL_SECONDS)
            )
        logger.info("Application started")
        try:
            yield
        finally:
            if sweeper is not None:
                sweeper.cancel()
                try:
                    await sweeper
                except asyncio.CancelledError:
                    pass
            await runtime.aclose()
            logger.info("Application stopped")

    app = FastAPI(title="Chatbook API", lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(users.router)
    app.include_router(phone_claims.router)
    app.include_router(messages.router)
    app.include_router(ledger_sync.router)

    @app.get("/")
    def root():
        """
        Root endpoint for the API.

        Returns:
            dict: JSON message pointing to the Swagger UI.
        """
        return {"msg": "Chatbook API. Visit /docs for Swagger UI"}

    return app


app = create_app()
