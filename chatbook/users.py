"""User-related routes for the chatbook backend."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from . import crud, ledger, schemas
from .auth import get_current_uid
from .database import get_db
from .errors import NotFound, ValidationFailed
from .phones import normalize_phone

router = APIRouter(prefix="/users", tags=["users"])


@router.post("/sync-profile", response_model=schemas.UserOut)
def sync_profile(
    profile: schemas.ProfileSync,
    uid: str = Depends(get_current_uid),
    db: Session = Depends(get_db),
):
    """
    Create or update the caller's profile.

    A changed phone is checked for ownership by another account and then
    recorded in the phone ledger.

    Args:
        profile (ProfileSync): Profile fields to apply.
        uid (str): Authenticated caller identity.
        db (Session): Database session.

    Returns:
        UserOut: Saved profile.
    """
    user = crud.sync_profile(db, uid, profile)
    return schemas.UserOut.from_user(user)


@router.get("/me", response_model=schemas.UserOut)
def read_me(uid: str = Depends(get_current_uid), db: Session = Depends(get_db)):
    """
    Retrieve the caller's profile.

    Raises:
        NotFound: If the caller has not synced a profile yet.
    """
    user = crud.get_user_by_uid(db, uid)
    if user is None:
        raise NotFound("User not found")
    return schemas.UserOut.from_user(user)


@router.put("/push-token", response_model=schemas.UserOut)
def update_push_token(
    payload: schemas.PushTokenUpdate,
    uid: str = Depends(get_current_uid),
    db: Session = Depends(get_db),
):
    """Register the device push token for the caller."""
    user = crud.update_push_token(db, uid, payload.push_token)
    return schemas.UserOut.from_user(user)


@router.get("/phone-status", response_model=schemas.PhoneStatusOut)
def phone_status(
    phone: str = Query(..., min_length=1),
    uid: str = Depends(get_current_uid),
    db: Session = Depends(get_db),
):
    """
    Report who holds a phone relative to the caller.

    Used to tell a user that a number they knew now belongs to someone
    else, and whether filing a claim makes sense.
    """
    lookup = normalize_phone(phone)
    if not lookup:
        raise ValidationFailed("A valid phone number is required")
    history = ledger.find_owner_history(db, lookup)
    current_owner = history.current.user_id if history.current else None
    previous_owner = history.previous.user_id if history.previous else None
    return schemas.PhoneStatusOut(
        phone_normalized=lookup,
        registered=current_owner is not None,
        owned_by_caller=current_owner == uid,
        previously_owned_by_other=previous_owner is not None and previous_owner != uid,
    )
