"""Phone claim workflow.

A claim asks the current owner of a phone to hand it over to the
requester. Claims move ``pending -> approved | rejected | blocked``:

* ``rejected`` lets the requester file a new claim; the rejection count
  carries over so the owner can be offered a block option.
* ``blocked`` refuses every later claim for the same
  (phone, requester, owner).
* ``approved`` transfers ownership in the ledger and on both user records
  inside a single transaction.
"""

import logging
from typing import NamedTuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, ledger, models
from .core import get_settings
from .database import utcnow
from .errors import Conflict, Forbidden, NotFound, ServiceError, ValidationFailed
from .phones import normalize_phone

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"
BLOCKED = "blocked"

ACTIONS = ("approve", "reject", "block")


class ClaimRequest(NamedTuple):
    claim: models.PhoneClaim
    can_block: bool


class ClaimResolution(NamedTuple):
    claim: models.PhoneClaim
    can_block: bool
    former_owner_needs_phone: bool


def can_offer_block(claim: models.PhoneClaim) -> bool:
    """Whether the owner should be offered to block this requester."""
    return claim.reject_count >= get_settings().CLAIM_BLOCK_OFFER_THRESHOLD


def _parties(phone: str, requester_id: str, target_owner_id: str):
    return (
        models.PhoneClaim.phone_normalized == phone,
        models.PhoneClaim.requester_id == requester_id,
        models.PhoneClaim.target_owner_id == target_owner_id,
    )


def _find_claim(db: Session, phone: str, requester_id: str, target_owner_id: str, status: str):
    return db.execute(
        select(models.PhoneClaim)
        .where(*_parties(phone, requester_id, target_owner_id))
        .where(models.PhoneClaim.status == status)
        .order_by(models.PhoneClaim.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def request_claim(db: Session, requester_id: str, raw_phone: str) -> ClaimRequest:
    """
    File a claim for a phone currently owned by another account.

    An identical pending claim is returned as is. A new claim starts with
    the number of earlier rejections between the same parties.

    Args:
        db (Session): Database session.
        requester_id (str): Caller identity.
        raw_phone (str): Phone as entered by the requester.

    Raises:
        ValidationFailed: If the phone does not normalize to a lookup key.
        NotFound: If nobody currently owns the phone.
        Conflict: If the requester already owns it.
        Forbidden: If the owner has blocked this requester for this phone.

    Returns:
        ClaimRequest: The pending claim and whether blocking should be offered.
    """
    phone = normalize_phone(raw_phone)
    if not phone:
        raise ValidationFailed("A valid phone number is required")

    current = ledger.get_current_link(db, phone)
    if current is None:
        raise NotFound("This phone number is not registered to any account")
    target_owner_id = current.user_id
    if target_owner_id == requester_id:
        raise Conflict("You already own this phone number")

    if _find_claim(db, phone, requester_id, target_owner_id, BLOCKED) is not None:
        raise Forbidden("The owner of this phone number has blocked your requests")

    pending = _find_claim(db, phone, requester_id, target_owner_id, PENDING)
    if pending is not None:
        return ClaimRequest(pending, can_offer_block(pending))

    prior_rejections = db.execute(
        select(func.count(models.PhoneClaim.id))
        .where(*_parties(phone, requester_id, target_owner_id))
        .where(models.PhoneClaim.status == REJECTED)
    ).scalar_one()

    claim = models.PhoneClaim(
        phone_normalized=phone,
        requester_id=requester_id,
        target_owner_id=target_owner_id,
        status=PENDING,
        reject_count=prior_rejections,
        blocked_by_target=False,
    )
    db.add(claim)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent request created the pending claim first
        db.rollback()
        claim = _find_claim(db, phone, requester_id, target_owner_id, PENDING)
        if claim is None:
            raise Conflict("Claim state changed, please retry")
        return ClaimRequest(claim, can_offer_block(claim))
    db.refresh(claim)
    logger.info(
        "Phone claim created",
        extra={
            "claim_id": claim.id,
            "phone": phone,
            "requester_id": requester_id,
            "target_owner_id": target_owner_id,
            "reject_count": claim.reject_count,
        },
    )
    return ClaimRequest(claim, can_offer_block(claim))


def list_incoming_claims(db: Session, owner_id: str) -> list[models.PhoneClaim]:
    """Pending claims against phones owned by ``owner_id``, newest first."""
    return db.scalars(
        select(models.PhoneClaim)
        .where(
            models.PhoneClaim.target_owner_id == owner_id,
            models.PhoneClaim.status == PENDING,
        )
        .order_by(models.PhoneClaim.created_at.desc(), models.PhoneClaim.id.desc())
    ).all()


def list_outgoing_claims(db: Session, requester_id: str) -> list[models.PhoneClaim]:
    """Every claim filed by ``requester_id``, newest first."""
    return db.scalars(
        select(models.PhoneClaim)
        .where(models.PhoneClaim.requester_id == requester_id)
        .order_by(models.PhoneClaim.created_at.desc(), models.PhoneClaim.id.desc())
    ).all()


def respond_to_claim(
    db: Session,
    claim_id: int,
    caller_id: str,
    action: str,
    *,
    pin_approved: bool = False,
    biometric_approved: bool = False,
) -> ClaimResolution:
    """
    Apply the target owner's decision to a pending claim.

    Args:
        db (Session): Database session.
        claim_id (int): Claim identifier.
        caller_id (str): Caller identity; must be the claim's target owner.
        action (str): ``approve``, ``reject`` or ``block``.
        pin_approved (bool): Owner confirmed with a PIN.
        biometric_approved (bool): Owner confirmed biometrically.

    Raises:
        NotFound: If the claim does not exist.
        Forbidden: If the caller is not the claim's target owner.
        Conflict: If the claim is no longer pending, or ownership changed
            before an approval could be applied.
        ValidationFailed: If the action is unknown, or an approval has
            neither PIN nor biometric confirmation.

    Returns:
        ClaimResolution: Updated claim plus response flags.
    """
    claim = db.get(models.PhoneClaim, claim_id)
    if claim is None:
        raise NotFound("Claim not found")
    if claim.target_owner_id != caller_id:
        raise Forbidden("Only the current owner can respond to this claim")
    if action not in ACTIONS:
        raise ValidationFailed(f"Action must be one of: {', '.join(ACTIONS)}")
    if claim.status != PENDING:
        raise Conflict(f"Claim is already {claim.status}")

    if action == "reject":
        claim.reject_count += 1
        claim.status = REJECTED
        db.commit()
        db.refresh(claim)
        logger.info(
            "Phone claim rejected",
            extra={"claim_id": claim.id, "reject_count": claim.reject_count},
        )
        return ClaimResolution(claim, can_offer_block(claim), False)

    if action == "block":
        claim.status = BLOCKED
        claim.blocked_by_target = True
        db.commit()
        db.refresh(claim)
        logger.info("Phone claim blocked", extra={"claim_id": claim.id})
        return ClaimResolution(claim, False, False)

    if not (pin_approved or biometric_approved):
        raise ValidationFailed("Approval requires PIN or biometric confirmation")
    former_owner_needs_phone = _approve(db, claim)
    return ClaimResolution(claim, False, former_owner_needs_phone)


def _approve(db: Session, claim: models.PhoneClaim) -> bool:
    """
    Transfer the claimed phone from the target owner to the requester.

    Runs as one transaction. The old owner's link is closed and flushed
    before the requester's link is opened, and the old owner's record is
    cleared before the requester's is written. On any failure the
    transaction is rolled back and the claim stays pending.

    Returns:
        bool: Whether the former owner is now left without a phone.
    """
    phone = claim.phone_normalized
    current = ledger.get_current_link(db, phone)
    if current is None or current.user_id != claim.target_owner_id:
        claim.status = REJECTED
        db.commit()
        logger.warning(
            "Phone claim approval raced with an ownership change",
            extra={"claim_id": claim.id, "phone": phone},
        )
        raise Conflict("Phone number is no longer owned by the approving account")

    requester = crud.get_user_by_uid(db, claim.requester_id)
    if requester is None:
        raise NotFound("Requesting user not found")
    former_owner = crud.get_user_by_uid(db, claim.target_owner_id)
    full_phone = current.full_phone or phone
    now = utcnow()

    try:
        ledger.close_current_links(db, phone, now=now)
        ledger.close_links_for_user(db, claim.requester_id, keep=phone, now=now)
        ledger.open_link(db, claim.requester_id, phone, full_phone, now=now)

        former_owner_needs_phone = False
        if former_owner is not None and normalize_phone(former_owner.mobile) == phone:
            former_owner.mobile = None
            former_owner.mobile_normalized = None
            former_owner.needs_phone_update = True
            former_owner_needs_phone = True
            db.flush()

        requester.mobile = full_phone
        requester.mobile_normalized = phone
        requester.needs_phone_update = False
        claim.status = APPROVED
        db.commit()
    except ServiceError:
        db.rollback()
        raise
    except IntegrityError:
        db.rollback()
        logger.warning("Phone claim approval conflicted", extra={"claim_id": claim.id})
        raise Conflict("Phone ownership changed during approval, please retry")
    except Exception:
        db.rollback()
        logger.exception("Phone claim approval failed", extra={"claim_id": claim.id})
        raise

    db.refresh(claim)
    logger.info(
        "Phone claim approved",
        extra={
            "claim_id": claim.id,
            "phone": phone,
            "from_user": claim.target_owner_id,
            "to_user": claim.requester_id,
            "former_owner_needs_phone": former_owner_needs_phone,
        },
    )
    return former_owner_needs_phone
