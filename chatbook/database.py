"""Database configuration and session management.

This module defines the declarative base, the :class:`Database` object
that owns one engine and its session factory, and the session dependency
used by FastAPI routes.
"""

from datetime import datetime, timezone

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker


Base = declarative_base()
"""Declarative base class for SQLAlchemy models."""


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching stored columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """
    Engine and session factory for one database.

    Created once at process start and shared by reference; nothing in the
    package opens connections on its own.
    """

    def __init__(self, url: str, **engine_kwargs):
        if url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        self.engine = create_engine(url, future=True, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            future=True,
        )

    def create_all(self) -> None:
        """Create all tables registered on :data:`Base`."""
        from . import models  # noqa: F401  registers the tables

        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """Drop all tables registered on :data:`Base`."""
        Base.metadata.drop_all(bind=self.engine)

    def session(self) -> Session:
        """Open a new session."""
        return self.SessionLocal()

    def dispose(self) -> None:
        """Close pooled connections."""
        self.engine.dispose()


def get_db(request: Request):
    """
    Provide a SQLAlchemy database session.

    This function is used as a FastAPI dependency.
    It yields a session from the application's runtime and ensures it is
    properly closed after the request is completed.
    """

    db = request.app.state.runtime.database.session()
    try:
        yield db
    finally:
        db.close()
