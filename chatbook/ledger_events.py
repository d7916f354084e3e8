"""Shared ledger event relay.

Two contacts keep a money ledger on their devices. When one of them
creates, updates or deletes an entry, the change is pushed to the other
as a ``ledger_event``. Nothing is stored server-side; the receiving device
deduplicates on the idempotency key.
"""

import logging
import math
from typing import NamedTuple

from sqlalchemy.orm import Session

from . import crud, models, schemas
from .core import get_settings
from .delivery import now_ms
from .errors import NotFound, ValidationFailed
from .push import PushRelay, attempt_push, build_ledger_event_payload

logger = logging.getLogger(__name__)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"

PAID = "paid"
GET = "get"


class LedgerSyncOutcome(NamedTuple):
    delivered: bool
    queued: bool
    idempotency_key: str
    note: str | None


def normalize_op(value: str | None) -> str:
    """``update`` and ``delete`` pass through; anything else is ``create``."""
    return value if value in (UPDATE, DELETE) else CREATE


def normalize_entry_type(value: str | None) -> str:
    return GET if value == GET else PAID


def normalize_amount(value: float | None) -> float:
    """Absolute amount; missing or non-finite values count as zero."""
    if value is None or not math.isfinite(value):
        return 0.0
    return abs(value)


def default_idempotency_key(source_uid: str, origin_txn_id: str, op: str) -> str:
    return f"ledger:{source_uid}:{origin_txn_id}:{op}"


def resolve_peer(db: Session, peer_ref: str) -> models.User | None:
    """Resolve a peer by identity-provider uid, then by numeric record id."""
    user = crud.get_user_by_uid(db, peer_ref)
    if user is None and peer_ref.isdigit():
        user = crud.get_user_by_id(db, int(peer_ref))
    return user


def sync_ledger_event(
    db: Session, relay: PushRelay, source_uid: str, payload: schemas.LedgerEventSync
) -> LedgerSyncOutcome:
    """
    Push a ledger entry change to the peer's device.

    A peer without a push token, or a failed push, is reported as queued;
    the peer's device picks the entry up on its next full sync.

    Args:
        db (Session): Database session.
        relay (PushRelay): Push relay client.
        source_uid (str): Caller identity.
        payload (LedgerEventSync): Entry change to relay.

    Raises:
        ValidationFailed: If the peer or transaction id is blank, or a
            create carries no positive amount.
        NotFound: If the peer does not resolve.

    Returns:
        LedgerSyncOutcome: Delivery flags and the idempotency key used.
    """
    peer_ref = payload.peer_user_id.strip()
    origin_txn_id = payload.origin_txn_id.strip()
    if not peer_ref or not origin_txn_id:
        raise ValidationFailed("peer_user_id and origin_txn_id are required")

    op = normalize_op(payload.op)
    entry_type = normalize_entry_type(payload.entry_type)
    amount = normalize_amount(payload.amount)
    if op == CREATE and amount <= 0:
        raise ValidationFailed("amount must be greater than 0 for create operation")

    peer = resolve_peer(db, peer_ref)
    if peer is None:
        raise NotFound("Receiver not found")

    idempotency_key = payload.idempotency_key or default_idempotency_key(
        source_uid, origin_txn_id, op
    )
    if not peer.push_token:
        return LedgerSyncOutcome(False, True, idempotency_key, "Receiver push token missing")

    sender = crud.get_user_by_uid(db, source_uid)
    sender_name = (sender and sender.display_name) or "Contact"
    note = (payload.note or "").strip()
    data = {
        "op": op,
        "originTxnId": origin_txn_id,
        "sourceUserId": source_uid,
        "sourceUserName": sender_name,
        "peerUserId": peer_ref,
        "entryType": entry_type,
        "amount": f"{amount:g}",
        "note": note,
        "timestamp": str(payload.timestamp or now_ms()),
        "idempotencyKey": idempotency_key,
        "version": str(payload.version or 1),
        "contactRecordId": payload.contact_record_id or "",
    }
    push_payload = build_ledger_event_payload(
        data=data,
        sender_name=sender_name,
        amount=amount,
        entry_type=entry_type,
        note=note,
        currency_label=get_settings().LEDGER_CURRENCY_LABEL,
    )
    result = attempt_push(relay, peer.push_token, push_payload)
    if not result.ok:
        logger.warning(
            "Ledger event push failed",
            extra={"idempotency_key": idempotency_key, "error": result.error},
        )
        return LedgerSyncOutcome(False, True, idempotency_key, "Push delivery failed")

    logger.info(
        "Ledger event relayed",
        extra={"idempotency_key": idempotency_key, "op": op, "peer": peer.uid},
    )
    return LedgerSyncOutcome(True, False, idempotency_key, None)
