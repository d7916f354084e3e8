"""Shared ledger relay routes for the chatbook backend."""

from fastapi import APIRouter, Depends
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from . import ledger_events, schemas
from .auth import get_current_uid
from .core import get_settings
from .database import get_db
from .push import PushRelay, get_push_relay

router = APIRouter(prefix="/ledger", tags=["ledger"])
settings = get_settings()

ledger_rate_limit = RateLimiter(times=settings.LEDGER_SYNC_RATE_LIMIT_PER_MINUTE, seconds=60)


@router.post(
    "/sync",
    response_model=schemas.LedgerEventSyncResult,
    dependencies=[Depends(ledger_rate_limit)],
)
def sync_ledger_event(
    payload: schemas.LedgerEventSync,
    uid: str = Depends(get_current_uid),
    db: Session = Depends(get_db),
    relay: PushRelay = Depends(get_push_relay),
):
    """
    Relay a shared ledger entry change to the contact's device.

    Args:
        payload (LedgerEventSync): Entry change.
        uid (str): Authenticated caller identity.
        db (Session): Database session.
        relay (PushRelay): Push relay client.

    Returns:
        LedgerEventSyncResult: Whether the event was pushed or queued.
    """
    outcome = ledger_events.sync_ledger_event(db, relay, uid, payload)
    return schemas.LedgerEventSyncResult(
        delivered=outcome.delivered,
        queued=outcome.queued,
        idempotency_key=outcome.idempotency_key,
        note=outcome.note,
    )
