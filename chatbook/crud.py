"""User directory operations.

This module contains database interaction logic for user records,
isolated from FastAPI route handlers. Phone changes are forwarded to the
phone ownership ledger so both stay in step.
"""

import logging
import re

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import ledger, models, schemas
from .errors import Conflict, NotFound, ValidationFailed
from .phones import MIN_PHONE_DIGITS, parse_phone, phone_digits

logger = logging.getLogger(__name__)

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")


def get_user_by_uid(db: Session, uid: str) -> models.User | None:
    """
    Retrieve a user by identity-provider uid.

    Args:
        db (Session): Database session.
        uid (str): Caller identity.

    Returns:
        User | None: User if found, otherwise ``None``.
    """
    if not uid:
        return None
    return db.execute(
        select(models.User).where(models.User.uid == uid)
    ).scalar_one_or_none()


def get_user_by_id(db: Session, user_id: int) -> models.User | None:
    """
    Retrieve a user by primary key.

    Args:
        db (Session): Database session.
        user_id (int): User identifier.

    Returns:
        User | None: User if found, otherwise ``None``.
    """
    return db.execute(
        select(models.User).where(models.User.id == user_id)
    ).scalar_one_or_none()


def get_user_by_username(db: Session, username: str) -> models.User | None:
    """Retrieve a user by lowercase username."""
    return db.execute(
        select(models.User).where(models.User.username == username.lower())
    ).scalar_one_or_none()


def get_user_by_normalized_phone(db: Session, lookup_key: str) -> models.User | None:
    """
    Retrieve the user whose stored lookup key equals ``lookup_key``.

    An empty key never matches.
    """
    if not lookup_key:
        return None
    return db.execute(
        select(models.User)
        .where(models.User.mobile_normalized == lookup_key)
        .order_by(models.User.id)
        .limit(1)
    ).scalar_one_or_none()


def find_user_by_phone_suffix(db: Session, digits: str) -> models.User | None:
    """
    Legacy lookup: the first user whose raw ``mobile`` ends with ``digits``.

    Deprecated. Records created before ``mobile_normalized`` existed can only
    be found this way; remove once the ledger backfill has run everywhere.
    """
    if not digits:
        return None
    return db.execute(
        select(models.User)
        .where(models.User.mobile.like(f"%{digits}"))
        .order_by(models.User.id)
        .limit(1)
    ).scalar_one_or_none()


def resolve_receiver(db: Session, receiver_ref: str) -> models.User | None:
    """
    Resolve a message receiver reference to a user.

    Tried in order: identity-provider uid, numeric record id, then phone
    (lookup key first, then the legacy suffix match on the raw phone for
    references with at least eight digits).

    Args:
        db (Session): Database session.
        receiver_ref (str): Reference supplied by the sender.

    Returns:
        User | None: Resolved receiver, if any.
    """
    target = (receiver_ref or "").strip()
    if not target:
        return None

    user = get_user_by_uid(db, target)
    if user:
        return user

    if target.isdigit():
        user = get_user_by_id(db, int(target))
        if user:
            return user

    phone = parse_phone(target)
    user = get_user_by_normalized_phone(db, phone.lookup)
    if user:
        return user
    digits = phone_digits(target)
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return find_user_by_phone_suffix(db, digits)


def sync_profile(db: Session, uid: str, profile: schemas.ProfileSync) -> models.User:
    """
    Create or update the caller's user record.

    A new phone is checked against the ledger and legacy user records
    before it is accepted. The record and its ledger links are written in
    one transaction, so a phone rejected by the ledger leaves the record
    untouched.

    Args:
        db (Session): Database session.
        uid (str): Caller identity.
        profile (ProfileSync): Fields to apply.

    Raises:
        ValidationFailed: If the username or phone is malformed.
        Conflict: If the username or phone belongs to another account.

    Returns:
        User: Saved user record.
    """
    username = (profile.username or "").strip()
    if username and not USERNAME_PATTERN.match(username):
        raise ValidationFailed(
            "Username can only contain letters, numbers, dots, hyphens, and underscores"
        )

    phone_changed = profile.mobile is not None
    phone = parse_phone(profile.mobile)
    if phone_changed:
        if profile.mobile.strip() and not phone.lookup:
            raise ValidationFailed("Phone number must contain at least 8 digits")
        if ledger.is_phone_taken(db, phone.lookup, uid):
            raise Conflict("Phone number is already registered to another account")

    if username:
        existing = get_user_by_username(db, username)
        if existing is not None and existing.uid != uid:
            raise Conflict("Username already taken")

    user = get_user_by_uid(db, uid)
    if user is None:
        user = models.User(uid=uid)
        db.add(user)

    if username:
        user.username = username.lower()
    previous_key = user.mobile_normalized
    if phone_changed:
        user.mobile = phone.display or None
        user.mobile_normalized = phone.lookup or None
        if phone.lookup:
            user.needs_phone_update = False
    if profile.display_name is not None:
        user.display_name = profile.display_name.strip() or user.display_name
    if profile.email is not None:
        user.email = profile.email
    if profile.push_token is not None:
        user.push_token = profile.push_token or None

    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise Conflict("Username already taken")

    try:
        if phone_changed:
            if previous_key and previous_key != phone.lookup:
                ledger.close_current_links(db, previous_key, user_id=uid)
            if phone.lookup:
                ledger.open_link(db, uid, phone.lookup, phone.display)
        db.commit()
    except IntegrityError:
        # another account became current owner after the availability check
        db.rollback()
        logger.warning(
            "Phone already has a current owner",
            extra={"phone": phone.lookup, "uid": uid},
        )
        raise Conflict("Phone number is already registered to another account")
    db.refresh(user)

    logger.info("Profile synced", extra={"uid": uid, "phone_changed": phone_changed})
    return user


def update_push_token(db: Session, uid: str, push_token: str) -> models.User:
    """
    Store the caller's device push token.

    Raises:
        NotFound: If the caller has no user record yet.
    """
    user = get_user_by_uid(db, uid)
    if user is None:
        raise NotFound("User not found")
    user.push_token = push_token
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
