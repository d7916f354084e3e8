# tests/conftest.py
import os
import sys

os.environ.setdefault("DELIVERY_SWEEP_INTERVAL_SECONDS", "0")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.pool import StaticPool

sys.path.append(os.path.abspath("."))

from chatbook import ledger, models
from chatbook.core import get_settings
from chatbook.database import Database
from chatbook.ledger_sync import ledger_rate_limit
from chatbook.messages import send_rate_limit
from chatbook.phone_claims import claim_rate_limit
from chatbook.phones import parse_phone
from chatbook.push import PushResult
from chatbook.runtime import Runtime
from main import create_app


class RecordingPushRelay:
    """Push relay double that records every send and can be told to fail."""

    def __init__(self):
        self.sent = []
        self.fail_with = None
        self.raise_with = None

    def send(self, token, payload):
        self.sent.append((token, payload))
        if self.raise_with is not None:
            raise self.raise_with
        if self.fail_with is not None:
            return PushResult(ok=False, error=self.fail_with)
        return PushResult(ok=True)


@pytest.fixture()
def database():
    # SQLite in-memory, one connection shared across threads
    db = Database("sqlite://", poolclass=StaticPool)
    db.create_all()
    yield db
    db.drop_all()
    db.dispose()


@pytest.fixture()
def db_session(database):
    session = database.session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def push_relay():
    return RecordingPushRelay()


@pytest.fixture()
def runtime(database, push_relay):
    return Runtime(database=database, push_relay=push_relay, redis=None)


@pytest.fixture()
def app(runtime):
    application = create_app(runtime)
    application.dependency_overrides[send_rate_limit] = lambda: None
    application.dependency_overrides[claim_rate_limit] = lambda: None
    application.dependency_overrides[ledger_rate_limit] = lambda: None
    return application


@pytest.fixture()
def client(app, db_session):
    with TestClient(app) as c:
        yield c
        # shutdown disposes the engine, release the shared connection first
        db_session.close()


def make_token(uid: str, **claims) -> str:
    settings = get_settings()
    payload = {"sub": uid, **claims}
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def auth_headers(uid: str) -> dict:
    return {"Authorization": f"Bearer {make_token(uid)}"}


def create_user(db_session, uid, mobile=None, push_token=None, username=None):
    """Insert a user and, when a phone is given, its current ledger link."""
    phone = parse_phone(mobile)
    user = models.User(
        uid=uid,
        username=username,
        display_name=uid.title(),
        mobile=phone.display or None,
        mobile_normalized=phone.lookup or None,
        push_token=push_token,
    )
    db_session.add(user)
    db_session.commit()
    if phone.lookup:
        ledger.set_current_owner(db_session, uid, mobile)
    db_session.refresh(user)
    return user
