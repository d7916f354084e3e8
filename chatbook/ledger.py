"""Phone ownership ledger.

The ledger records which account owns a normalized phone over time as a
series of :class:`~chatbook.models.PhoneLink` rows. The link with
``is_current`` set is the present-day owner; the database refuses a
second current link for the same phone.

Functions prefixed with ``open_``/``close_`` only flush, so callers can
combine them into one transaction. :func:`set_current_owner` commits.
"""

import logging
from datetime import datetime
from typing import NamedTuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .database import utcnow
from .errors import Conflict
from .phones import parse_phone

logger = logging.getLogger(__name__)


class OwnerHistory(NamedTuple):
    """Current link for a phone and the most recently closed one."""

    current: models.PhoneLink | None
    previous: models.PhoneLink | None


def get_current_link(db: Session, lookup_key: str) -> models.PhoneLink | None:
    """
    Return the current link for a lookup key.

    Args:
        db (Session): Database session.
        lookup_key (str): Normalized phone.

    Returns:
        PhoneLink | None: Current link, or ``None`` for unowned/empty keys.
    """
    if not lookup_key:
        return None
    return db.execute(
        select(models.PhoneLink).where(
            models.PhoneLink.phone_normalized == lookup_key,
            models.PhoneLink.is_current.is_(True),
        )
    ).scalar_one_or_none()


def close_current_links(
    db: Session,
    lookup_key: str,
    *,
    user_id: str | None = None,
    now: datetime | None = None,
) -> int:
    """
    Close current links for a phone, optionally only one account's.

    Returns:
        int: Number of links closed.
    """
    if not lookup_key:
        return 0
    stmt = select(models.PhoneLink).where(
        models.PhoneLink.phone_normalized == lookup_key,
        models.PhoneLink.is_current.is_(True),
    )
    if user_id is not None:
        stmt = stmt.where(models.PhoneLink.user_id == user_id)
    closed = _close(db, db.scalars(stmt).all(), now or utcnow())
    if closed:
        logger.info(
            "Closed phone links",
            extra={"phone": lookup_key, "user_id": user_id, "closed": closed},
        )
    return closed


def close_links_for_user(
    db: Session, user_id: str, *, keep: str = "", now: datetime | None = None
) -> int:
    """Close every current link an account holds except the ``keep`` phone."""
    links = db.scalars(
        select(models.PhoneLink).where(
            models.PhoneLink.user_id == user_id,
            models.PhoneLink.is_current.is_(True),
            models.PhoneLink.phone_normalized != keep,
        )
    ).all()
    return _close(db, links, now or utcnow())


def _close(db: Session, links, now: datetime) -> int:
    for link in links:
        link.is_current = False
        link.valid_to = now
        link.updated_at = now
    # written before any new current link is inserted
    db.flush()
    return len(links)


def open_link(
    db: Session,
    user_id: str,
    lookup_key: str,
    full_phone: str,
    *,
    now: datetime | None = None,
) -> models.PhoneLink:
    """
    Ensure ``user_id`` holds the current link for ``lookup_key``.

    An existing current link for the same account only has its display
    phone refreshed. If another account holds the current link the flush
    fails with :class:`~sqlalchemy.exc.IntegrityError`.
    """
    now = now or utcnow()
    link = db.execute(
        select(models.PhoneLink).where(
            models.PhoneLink.user_id == user_id,
            models.PhoneLink.phone_normalized == lookup_key,
            models.PhoneLink.is_current.is_(True),
        )
    ).scalar_one_or_none()
    if link is not None:
        link.full_phone = full_phone or link.full_phone
        link.updated_at = now
    else:
        link = models.PhoneLink(
            user_id=user_id,
            phone_normalized=lookup_key,
            full_phone=full_phone or lookup_key,
            is_current=True,
            valid_from=now,
        )
        db.add(link)
    db.flush()
    return link


def set_current_owner(
    db: Session,
    user_id: str,
    raw_phone: str | None,
    previous_lookup_key: str | None = None,
) -> models.PhoneLink | None:
    """
    Record that ``user_id`` now owns ``raw_phone``.

    When the account's previous lookup key differs from the new one, the
    prior current link is closed first. An empty new key leaves the account
    without a phone. Calling twice with the same arguments only refreshes
    timestamps.

    Args:
        db (Session): Database session.
        user_id (str): Owning account identity.
        raw_phone (str | None): Phone as entered by the user.
        previous_lookup_key (str | None): Lookup key the account held before.

    Raises:
        Conflict: If another account currently owns the phone.

    Returns:
        PhoneLink | None: Current link, or ``None`` if the account has no phone.
    """
    phone = parse_phone(raw_phone)
    now = utcnow()
    try:
        if previous_lookup_key and previous_lookup_key != phone.lookup:
            close_current_links(db, previous_lookup_key, user_id=user_id, now=now)
        if not phone.lookup:
            db.commit()
            return None
        link = open_link(db, user_id, phone.lookup, phone.display, now=now)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(
            "Phone already has a current owner",
            extra={"phone": phone.lookup, "user_id": user_id},
        )
        raise Conflict("Phone number is already registered to another account")
    db.refresh(link)
    logger.info("Phone owner set", extra={"phone": phone.lookup, "user_id": user_id})
    return link


def is_phone_taken(db: Session, lookup_key: str, excluding_user_id: str | None) -> bool:
    """
    Check whether another account holds a phone.

    Both the ledger and the phone stored directly on user records are
    consulted, since user records may predate the ledger.

    Args:
        db (Session): Database session.
        lookup_key (str): Normalized phone.
        excluding_user_id (str | None): Account to ignore, usually the caller.

    Returns:
        bool: ``True`` if any other account owns the phone.
    """
    if not lookup_key:
        return False

    link_stmt = select(models.PhoneLink.id).where(
        models.PhoneLink.phone_normalized == lookup_key,
        models.PhoneLink.is_current.is_(True),
    )
    user_stmt = select(models.User.id).where(models.User.mobile_normalized == lookup_key)
    if excluding_user_id is not None:
        link_stmt = link_stmt.where(models.PhoneLink.user_id != excluding_user_id)
        user_stmt = user_stmt.where(models.User.uid != excluding_user_id)

    if db.execute(link_stmt.limit(1)).first() is not None:
        return True
    return db.execute(user_stmt.limit(1)).first() is not None


def find_owner_history(db: Session, lookup_key: str) -> OwnerHistory:
    """
    Return the current link and the most recently closed link for a phone.

    Args:
        db (Session): Database session.
        lookup_key (str): Normalized phone.

    Returns:
        OwnerHistory: ``(current, previous)``; either may be ``None``.
    """
    if not lookup_key:
        return OwnerHistory(None, None)
    previous = db.execute(
        select(models.PhoneLink)
        .where(
            models.PhoneLink.phone_normalized == lookup_key,
            models.PhoneLink.is_current.is_(False),
        )
        .order_by(models.PhoneLink.valid_to.desc(), models.PhoneLink.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    return OwnerHistory(get_current_link(db, lookup_key), previous)
