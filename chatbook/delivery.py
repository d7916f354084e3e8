"""Message delivery tracking.

Each relayed chat message gets a :class:`~chatbook.models.MessageDelivery`
row that moves through ``failed < accepted < pushed < delivered < read``.
Receipts only ever move a record forward. Rows expire on a horizon that
depends on their status and are deleted by :func:`run_expiry_sweeper`.
"""

import asyncio
import logging
import secrets
import time
from datetime import datetime, timedelta
from typing import NamedTuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, models, schemas
from .core import get_settings
from .database import Database, utcnow
from .errors import Conflict, Forbidden, NotFound, ValidationFailed
from .push import PushRelay, attempt_push, build_chat_payload, build_receipt_payload

logger = logging.getLogger(__name__)

FAILED = "failed"
ACCEPTED = "accepted"
PUSHED = "pushed"
DELIVERED = "delivered"
READ = "read"

STATUS_RANK = {
    FAILED: 0,
    ACCEPTED: 1,
    PUSHED: 2,
    DELIVERED: 3,
    READ: 4,
}

RECEIPT_STATUSES = (DELIVERED, READ)


class SendOutcome(NamedTuple):
    message_id: str
    status: str
    queued: bool
    note: str | None


def now_ms() -> int:
    return int(time.time() * 1000)


def generate_message_id() -> str:
    """Message id used when the sender does not supply one."""
    return f"msg_{now_ms()}_{secrets.token_hex(4)}"


def should_advance(current: str | None, new: str | None) -> bool:
    """
    Whether moving from ``current`` to ``new`` keeps status monotonic.

    Unknown statuses rank like ``failed``. Re-asserting the same status is
    allowed.
    """
    return STATUS_RANK.get(new or "", 0) >= STATUS_RANK.get(current or "", 0)


def compute_expiry(status: str, now: datetime | None = None) -> datetime:
    """
    Expiry time for a record in ``status``.

    Acknowledged records expire after minutes, unacknowledged ones after
    hours, and anything unrecognised after the long fallback.
    """
    settings = get_settings()
    now = now or utcnow()
    if status in (DELIVERED, READ):
        return now + timedelta(minutes=settings.DELIVERY_TTL_ACKED_MINUTES)
    if status in (ACCEPTED, PUSHED, FAILED):
        return now + timedelta(hours=settings.DELIVERY_TTL_PENDING_HOURS)
    return now + timedelta(days=settings.DELIVERY_TTL_FALLBACK_DAYS)


def get_delivery(db: Session, message_id: str) -> models.MessageDelivery | None:
    """Retrieve an unexpired delivery record by message id."""
    return db.execute(
        select(models.MessageDelivery).where(
            models.MessageDelivery.message_id == message_id,
            models.MessageDelivery.expires_at > utcnow(),
        )
    ).scalar_one_or_none()


def _find_record(db: Session, message_id: str) -> models.MessageDelivery | None:
    return db.execute(
        select(models.MessageDelivery).where(
            models.MessageDelivery.message_id == message_id
        )
    ).scalar_one_or_none()


def _apply_state(
    record: models.MessageDelivery,
    state: dict,
    status: str,
    last_error: str | None,
    now: datetime,
) -> None:
    if record.sender_id is not None and record.sender_id != state["sender_id"]:
        raise Conflict("Message id is already in use")
    for key, value in state.items():
        setattr(record, key, value)
    record.message_text = state["message_text"][: get_settings().MESSAGE_TEXT_MAX_LENGTH]
    if STATUS_RANK.get(record.status, 0) < STATUS_RANK[DELIVERED]:
        record.status = status
    if last_error:
        record.last_error = last_error
        record.retry_count = (record.retry_count or 0) + 1
    else:
        record.last_error = None
    record.expires_at = compute_expiry(record.status, now)
    record.updated_at = now


def save_delivery_state(
    db: Session,
    *,
    message_id: str,
    conversation_id: str,
    sender_id: str,
    receiver_id: str,
    message_text: str,
    message_timestamp: int,
    status: str,
    last_error: str | None = None,
) -> models.MessageDelivery:
    """
    Upsert the delivery record for ``message_id`` and commit.

    A record already advanced by a receipt keeps its status. A non-empty
    ``last_error`` bumps the retry counter; otherwise the error is cleared.
    When a concurrent send inserts the same message id first, the update is
    applied to that record instead.

    Raises:
        Conflict: If the message id belongs to another sender.
    """
    now = utcnow()
    state = dict(
        conversation_id=conversation_id,
        sender_id=sender_id,
        receiver_id=receiver_id,
        message_text=message_text,
        message_timestamp=message_timestamp,
    )
    record = _find_record(db, message_id)
    if record is None:
        record = models.MessageDelivery(
            message_id=message_id, status=status, retry_count=0, created_at=now
        )
        db.add(record)
    try:
        _apply_state(record, state, status, last_error, now)
        db.commit()
    except IntegrityError:
        db.rollback()
        record = _find_record(db, message_id)
        if record is None:
            raise Conflict("Message state changed, please retry")
        logger.info("Message id inserted concurrently, updating", extra={"message_id": message_id})
        _apply_state(record, state, status, last_error, now)
        db.commit()
    except Conflict:
        db.rollback()
        raise
    db.refresh(record)
    return record


def send_message(
    db: Session, relay: PushRelay, sender_id: str, payload: schemas.MessageSend
) -> SendOutcome:
    """
    Record a chat message and try to push it to the receiver.

    The ``accepted`` record is committed before the push is attempted. A
    missing push token or a failed push leaves the record ``accepted`` and
    is reported to the sender as queued, never as a failure.

    Args:
        db (Session): Database session.
        relay (PushRelay): Push relay client.
        sender_id (str): Caller identity.
        payload (MessageSend): Validated send request.

    Raises:
        ValidationFailed: If sender and receiver are the same account.
        NotFound: If the receiver does not resolve.
        Conflict: If the message id belongs to another sender.

    Returns:
        SendOutcome: Message id, resulting status and queue flags.
    """
    if payload.receiver_id == sender_id:
        raise ValidationFailed("Sender and receiver cannot be the same")

    receiver = crud.resolve_receiver(db, payload.receiver_id)
    if receiver is None:
        raise NotFound("Receiver not found")
    if receiver.uid == sender_id:
        raise ValidationFailed("Sender and receiver cannot be the same")

    message_id = payload.message_id or generate_message_id()
    timestamp = payload.timestamp or now_ms()
    state = dict(
        message_id=message_id,
        conversation_id=payload.conversation_id,
        sender_id=sender_id,
        receiver_id=receiver.uid,
        message_text=payload.message_text,
        message_timestamp=timestamp,
    )

    save_delivery_state(db, status=ACCEPTED, **state)
    logger.info(
        "Message accepted",
        extra={"message_id": message_id, "sender_id": sender_id, "receiver_id": receiver.uid},
    )

    if not receiver.push_token:
        return SendOutcome(message_id, ACCEPTED, True, "Receiver push token missing")

    sender = crud.get_user_by_uid(db, sender_id)
    sender_name = (sender and (sender.display_name or sender.username)) or "New Message"
    sender_phone = (sender and (sender.mobile_normalized or sender.mobile)) or ""
    push_payload = build_chat_payload(
        message_id=message_id,
        conversation_id=payload.conversation_id,
        sender_id=sender_id,
        sender_name=sender_name,
        sender_phone=sender_phone,
        message_text=payload.message_text,
        message_type=payload.message_type,
        timestamp=timestamp,
    )
    result = attempt_push(relay, receiver.push_token, push_payload)

    if result.ok:
        record = save_delivery_state(db, status=PUSHED, **state)
        logger.info("Message pushed", extra={"message_id": message_id})
        return SendOutcome(message_id, record.status, False, None)

    error = result.error or "Push delivery failed"
    record = save_delivery_state(db, status=ACCEPTED, last_error=error, **state)
    logger.warning(
        "Message push failed, retained for retry",
        extra={"message_id": message_id, "error": error, "retry_count": record.retry_count},
    )
    return SendOutcome(message_id, record.status, True, "Push delivery failed, retained for retry")


def record_receipt(
    db: Session, caller_id: str, message_id: str, status: str
) -> models.MessageDelivery:
    """
    Apply a receiver's ``delivered``/``read`` receipt.

    Args:
        db (Session): Database session.
        caller_id (str): Caller identity; must be the record's receiver.
        message_id (str): Message identifier.
        status (str): ``delivered`` or ``read``.

    Raises:
        ValidationFailed: If ``status`` is not a receipt status.
        NotFound: If no unexpired record exists for the message.
        Forbidden: If the caller is not the receiver.

    Returns:
        MessageDelivery: Updated record.
    """
    if status not in RECEIPT_STATUSES:
        raise ValidationFailed(f"Status must be one of: {', '.join(RECEIPT_STATUSES)}")

    record = get_delivery(db, message_id.strip())
    if record is None:
        raise NotFound("Message delivery record not found")
    if record.receiver_id != caller_id:
        raise Forbidden("Only the receiver can send a delivery receipt for this message")

    now = utcnow()
    if should_advance(record.status, status):
        record.status = status
    record.last_error = None
    if status == DELIVERED and record.delivered_at is None:
        record.delivered_at = now
    if status == READ:
        if record.read_at is None:
            record.read_at = now
        if record.delivered_at is None:
            record.delivered_at = now
    record.expires_at = compute_expiry(record.status, now)
    record.updated_at = now
    db.commit()
    db.refresh(record)
    logger.info(
        "Delivery receipt recorded",
        extra={"message_id": record.message_id, "receipt": status, "status": record.status},
    )
    return record


def relay_receipt(relay: PushRelay, token: str, payload: dict) -> None:
    """Tell the sender's device about a receipt. Failures are only logged."""
    result = attempt_push(relay, token, payload)
    if not result.ok:
        logger.warning(
            "Failed to relay receipt to sender",
            extra={"message_id": payload["data"]["messageId"], "error": result.error},
        )


def receipt_notification(record: models.MessageDelivery) -> dict:
    """Receipt payload for ``record``'s sender."""
    return build_receipt_payload(
        message_id=record.message_id,
        status=record.status,
        conversation_id=record.conversation_id,
        timestamp=now_ms(),
    )


def is_participant(conversation_id: str, uid: str) -> bool:
    """
    Whether ``uid`` is one of the two parties in ``conversation_id``.

    Conversation ids are ``<uidA>_<uidB>``.
    """
    if not uid or not conversation_id:
        return False
    return conversation_id.startswith(f"{uid}_") or conversation_id.endswith(f"_{uid}")


def pending_sync(
    db: Session,
    caller_id: str,
    conversation_id: str,
    since: int = 0,
    limit: int | None = None,
) -> list[models.MessageDelivery]:
    """
    Messages the caller has yet to catch up on in one conversation.

    Args:
        db (Session): Database session.
        caller_id (str): Caller identity.
        conversation_id (str): Conversation to sync.
        since (int): Only messages with a later timestamp (epoch ms).
        limit (int | None): Page size, clamped to the configured maximum.

    Raises:
        Forbidden: If the caller is not part of the conversation.

    Returns:
        list[MessageDelivery]: Non-failed, unexpired records addressed to the
        caller, ordered by message timestamp then creation order.
    """
    conversation_id = (conversation_id or "").strip()
    if not conversation_id:
        raise ValidationFailed("conversation_id is required")
    if not is_participant(conversation_id, caller_id):
        raise Forbidden("You are not a participant in this conversation")

    settings = get_settings()
    page_size = min(max(limit or settings.SYNC_PAGE_SIZE, 1), settings.SYNC_PAGE_SIZE_MAX)

    return db.scalars(
        select(models.MessageDelivery)
        .where(
            models.MessageDelivery.conversation_id == conversation_id,
            models.MessageDelivery.receiver_id == caller_id,
            models.MessageDelivery.status != FAILED,
            models.MessageDelivery.message_timestamp > since,
            models.MessageDelivery.expires_at > utcnow(),
        )
        .order_by(
            models.MessageDelivery.message_timestamp.asc(),
            models.MessageDelivery.created_at.asc(),
            models.MessageDelivery.id.asc(),
        )
        .limit(page_size)
    ).all()


def purge_expired(db: Session, now: datetime | None = None) -> int:
    """
    Delete delivery records whose expiry has passed.

    Returns:
        int: Number of records removed.
    """
    result = db.execute(
        delete(models.MessageDelivery)
        .where(models.MessageDelivery.expires_at <= (now or utcnow()))
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount or 0


def _sweep_once(database: Database) -> int:
    with database.session() as db:
        return purge_expired(db)


async def run_expiry_sweeper(database: Database, interval: float) -> None:
    """
    Periodically purge expired delivery records until cancelled.

    Each sweep runs in a worker thread; a failed sweep is logged and the
    next one still runs.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            removed = await asyncio.to_thread(_sweep_once, database)
        except Exception:
            logger.exception("Delivery expiry sweep failed")
            continue
        if removed:
            logger.info("Purged expired deliveries", extra={"removed": removed})
