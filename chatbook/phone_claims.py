"""Phone claim routes for the chatbook backend."""

from typing import List

from fastapi import APIRouter, Depends
from fastapi_limiter.depends import RateLimiter
from sqlalchemy.orm import Session

from . import claims, schemas
from .auth import get_current_uid
from .core import get_settings
from .database import get_db

router = APIRouter(prefix="/phone-claims", tags=["phone-claims"])
settings = get_settings()

claim_rate_limit = RateLimiter(times=settings.CLAIM_RATE_LIMIT_PER_MINUTE, seconds=60)


@router.post(
    "",
    response_model=schemas.PhoneClaimRequestResult,
    dependencies=[Depends(claim_rate_limit)],
)
def request_claim(
    payload: schemas.PhoneClaimCreate,
    uid: str = Depends(get_current_uid),
    db: Session = Depends(get_db),
):
    """
    Ask the current owner of a phone to transfer it to the caller.

    Repeating the request while a claim is pending returns that claim.

    Args:
        payload (PhoneClaimCreate): Phone being claimed.
        uid (str): Authenticated caller identity.
        db (Session): Database session.

    Returns:
        PhoneClaimRequestResult: Pending claim and whether the owner will be
        offered to block the caller.
    """
    result = claims.request_claim(db, uid, payload.phone)
    return schemas.PhoneClaimRequestResult(
        claim=schemas.PhoneClaimOut.model_validate(result.claim),
        can_block=result.can_block,
    )


@router.get("/incoming", response_model=List[schemas.PhoneClaimOut])
def list_incoming(uid: str = Depends(get_current_uid), db: Session = Depends(get_db)):
    """Pending claims against phones the caller owns."""
    return claims.list_incoming_claims(db, uid)


@router.get("/outgoing", response_model=List[schemas.PhoneClaimOut])
def list_outgoing(uid: str = Depends(get_current_uid), db: Session = Depends(get_db)):
    """Claims the caller has filed, in any state."""
    return claims.list_outgoing_claims(db, uid)


@router.post("/{claim_id}/respond", response_model=schemas.PhoneClaimResolution)
def respond(
    claim_id: int,
    payload: schemas.PhoneClaimRespond,
    uid: str = Depends(get_current_uid),
    db: Session = Depends(get_db),
):
    """
    Approve, reject or block a claim against the caller's phone.

    Approval needs PIN or biometric confirmation and moves the phone to the
    requester; ``former_owner_needs_phone`` tells the caller to register a
    new number.

    Args:
        claim_id (int): Claim identifier.
        payload (PhoneClaimRespond): Decision and confirmation flags.
        uid (str): Authenticated caller identity.
        db (Session): Database session.

    Returns:
        PhoneClaimResolution: Updated claim and response flags.
    """
    result = claims.respond_to_claim(
        db,
        claim_id,
        uid,
        payload.action,
        pin_approved=payload.pin_approved,
        biometric_approved=payload.biometric_approved,
    )
    return schemas.PhoneClaimResolution(
        claim=schemas.PhoneClaimOut.model_validate(result.claim),
        can_block=result.can_block,
        former_owner_needs_phone=result.former_owner_needs_phone,
    )
