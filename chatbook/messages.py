"""Message relay routes for the chatbook backend."""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from . import crud, delivery, schemas
from .auth import get_current_uid
from .core import get_settings
from .database import get_db
from .push import PushRelay, get_push_relay

router = APIRouter(prefix="/messages", tags=["messages"])
settings = get_settings()

send_rate_limit = RateLimiter(times=settings.SEND_RATE_LIMIT_PER_MINUTE, seconds=60)


@router.post(
    "/send",
    response_model=schemas.MessageSendResult,
    dependencies=[Depends(send_rate_limit)],
)
def send_message(
    payload: schemas.MessageSend,
    uid: str = Depends(get_current_uid),
    db: Session = Depends(get_db),
    relay: PushRelay = Depends(get_push_relay),
):
    """
    Relay a chat message to the receiver's device.

    The message is recorded before the push is attempted. If the receiver
    has no push token or the push fails, the response still succeeds with
    ``queued`` set; the receiver catches up through pending sync.

    Args:
        payload (MessageSend): Message to relay.
        uid (str): Authenticated sender identity.
        db (Session): Database session.
        relay (PushRelay): Push relay client.

    Returns:
        MessageSendResult: Message id and resulting delivery status.
    """
    outcome = delivery.send_message(db, relay, uid, payload)
    return schemas.MessageSendResult(
        message_id=outcome.message_id,
        status=outcome.status,
        queued=outcome.queued,
        note=outcome.note,
    )


@router.post("/delivery-receipt", response_model=schemas.DeliveryReceiptResult)
def delivery_receipt(
    payload: schemas.DeliveryReceipt,
    background_tasks: BackgroundTasks,
    uid: str = Depends(get_current_uid),
    db: Session = Depends(get_db),
    relay: PushRelay = Depends(get_push_relay),
):
    """
    Record that the caller received or read a message.

    The receipt is passed on to the sender's device after the response is
    sent; a failed relay does not affect the recorded status.
    """
    record = delivery.record_receipt(db, uid, payload.message_id, payload.status)
    sender = crud.get_user_by_uid(db, record.sender_id)
    if sender is not None and sender.push_token:
        background_tasks.add_task(
            delivery.relay_receipt,
            relay,
            sender.push_token,
            delivery.receipt_notification(record),
        )
    return schemas.DeliveryReceiptResult(message_id=record.message_id, status=record.status)


@router.get("/pending-sync", response_model=schemas.PendingSyncOut)
def pending_sync(
    conversation_id: str = Query(..., min_length=1),
    since: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1),
    uid: str = Depends(get_current_uid),
    db: Session = Depends(get_db),
):
    """
    Messages addressed to the caller in a conversation after ``since``.

    Args:
        conversation_id (str): Conversation identifier ``<uidA>_<uidB>``.
        since (int): Cursor, epoch milliseconds of the last seen message.
        limit (int | None): Page size.
        uid (str): Authenticated caller identity.
        db (Session): Database session.

    Returns:
        PendingSyncOut: Ordered records and the cursor for the next call.
    """
    records = delivery.pending_sync(db, uid, conversation_id, since=since, limit=limit)
    items = [schemas.MessageDeliveryOut.model_validate(r) for r in records]
    cursor = items[-1].message_timestamp if items else since
    return schemas.PendingSyncOut(items=items, cursor=cursor)
