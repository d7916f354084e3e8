import pytest
from sqlalchemy import select

from chatbook import claims, crud, ledger, models
from chatbook.errors import Conflict, Forbidden, NotFound, ValidationFailed

from conftest import create_user

PHONE = "9876543210"


@pytest.fixture()
def owners(db_session):
    alice = create_user(db_session, "alice", mobile=f"+91 {PHONE}")
    bob = create_user(db_session, "bob", mobile="9123456780")
    return alice, bob


def _approve(db_session, claim, owner="alice"):
    return claims.respond_to_claim(
        db_session, claim.id, owner, "approve", pin_approved=True
    )


def test_request_claim_creates_pending_claim(db_session, owners):
    result = claims.request_claim(db_session, "bob", PHONE)

    assert result.claim.status == claims.PENDING
    assert result.claim.target_owner_id == "alice"
    assert result.claim.requester_id == "bob"
    assert result.claim.reject_count == 0
    assert result.can_block is False


def test_request_claim_is_idempotent_while_pending(db_session, owners):
    first = claims.request_claim(db_session, "bob", PHONE)
    second = claims.request_claim(db_session, "bob", f"+91-{PHONE}")

    assert second.claim.id == first.claim.id
    assert len(db_session.scalars(select(models.PhoneClaim)).all()) == 1


@pytest.mark.parametrize(
    "phone, requester, error",
    [
        ("123", "bob", ValidationFailed),
        ("9000000000", "bob", NotFound),
        (PHONE, "alice", Conflict),
    ],
)
def test_request_claim_guards(db_session, owners, phone, requester, error):
    with pytest.raises(error):
        claims.request_claim(db_session, requester, phone)


def test_reject_then_reclaim_carries_reject_count(db_session, owners):
    first = claims.request_claim(db_session, "bob", PHONE).claim
    rejected = claims.respond_to_claim(db_session, first.id, "alice", "reject")
    assert rejected.claim.status == claims.REJECTED
    assert rejected.claim.reject_count == 1
    assert rejected.can_block is False

    second = claims.request_claim(db_session, "bob", PHONE)
    assert second.claim.id != first.id
    assert second.claim.reject_count == 1

    rejected_again = claims.respond_to_claim(db_session, second.claim.id, "alice", "reject")
    assert rejected_again.claim.reject_count == 2
    assert rejected_again.can_block is True

    third = claims.request_claim(db_session, "bob", PHONE)
    assert third.claim.reject_count == 2
    assert third.can_block is True


def test_block_refuses_later_claims(db_session, owners):
    claim = claims.request_claim(db_session, "bob", PHONE).claim
    result = claims.respond_to_claim(db_session, claim.id, "alice", "block")

    assert result.claim.status == claims.BLOCKED
    assert result.claim.blocked_by_target is True
    with pytest.raises(Forbidden):
        claims.request_claim(db_session, "bob", PHONE)


def test_respond_guards(db_session, owners):
    claim = claims.request_claim(db_session, "bob", PHONE).claim

    with pytest.raises(NotFound):
        claims.respond_to_claim(db_session, 9999, "alice", "reject")
    with pytest.raises(Forbidden):
        claims.respond_to_claim(db_session, claim.id, "bob", "approve", pin_approved=True)
    with pytest.raises(ValidationFailed):
        claims.respond_to_claim(db_session, claim.id, "alice", "ignore")
    with pytest.raises(ValidationFailed):
        claims.respond_to_claim(db_session, claim.id, "alice", "approve")

    claims.respond_to_claim(db_session, claim.id, "alice", "reject")
    with pytest.raises(Conflict):
        claims.respond_to_claim(db_session, claim.id, "alice", "reject")


def test_approve_transfers_ownership(db_session, owners):
    claim = claims.request_claim(db_session, "bob", PHONE).claim
    result = claims.respond_to_claim(
        db_session, claim.id, "alice", "approve", biometric_approved=True
    )

    assert result.claim.status == claims.APPROVED
    assert result.former_owner_needs_phone is True

    current = ledger.get_current_link(db_session, PHONE)
    assert current.user_id == "bob"
    assert current.full_phone == "+919876543210"
    # bob's old phone is released
    assert ledger.get_current_link(db_session, "9123456780") is None

    history = ledger.find_owner_history(db_session, PHONE)
    assert history.previous.user_id == "alice"

    alice = crud.get_user_by_uid(db_session, "alice")
    bob = crud.get_user_by_uid(db_session, "bob")
    assert alice.mobile is None
    assert alice.mobile_normalized is None
    assert alice.needs_phone_update is True
    assert bob.mobile_normalized == PHONE
    assert bob.needs_phone_update is False


def test_approve_after_ownership_changed_rejects_claim(db_session, owners):
    claim = claims.request_claim(db_session, "bob", PHONE).claim
    # alice moves to another number before answering
    ledger.set_current_owner(db_session, "alice", "9555555555", PHONE)
    create_user(db_session, "carol", mobile=PHONE)

    with pytest.raises(Conflict):
        _approve(db_session, claim)

    db_session.refresh(claim)
    assert claim.status == claims.REJECTED
    assert claim.reject_count == 0
    assert ledger.get_current_link(db_session, PHONE).user_id == "carol"


def test_approve_rolls_back_when_requester_missing(db_session, owners):
    claim = models.PhoneClaim(
        phone_normalized=PHONE, requester_id="ghost", target_owner_id="alice"
    )
    db_session.add(claim)
    db_session.commit()

    with pytest.raises(NotFound):
        _approve(db_session, claim)

    db_session.refresh(claim)
    assert claim.status == claims.PENDING
    assert ledger.get_current_link(db_session, PHONE).user_id == "alice"


def test_incoming_and_outgoing_lists(db_session, owners):
    create_user(db_session, "carol")
    from_bob = claims.request_claim(db_session, "bob", PHONE).claim
    from_carol = claims.request_claim(db_session, "carol", PHONE).claim
    claims.respond_to_claim(db_session, from_carol.id, "alice", "reject")

    incoming = claims.list_incoming_claims(db_session, "alice")
    assert [c.id for c in incoming] == [from_bob.id]

    outgoing = claims.list_outgoing_claims(db_session, "carol")
    assert [c.status for c in outgoing] == [claims.REJECTED]
    assert claims.list_incoming_claims(db_session, "bob") == []


def test_claim_cannot_be_approved_twice(db_session, owners):
    claim = claims.request_claim(db_session, "bob", PHONE).claim
    _approve(db_session, claim)
    link_id = ledger.get_current_link(db_session, PHONE).id

    with pytest.raises(Conflict):
        _approve(db_session, claim)

    db_session.expire_all()
    current = ledger.get_current_link(db_session, PHONE)
    assert current.id == link_id
    assert current.user_id == "bob"
    assert db_session.get(models.PhoneClaim, claim.id).status == claims.APPROVED
    alice = crud.get_user_by_uid(db_session, "alice")
    bob = crud.get_user_by_uid(db_session, "bob")
    assert alice.mobile_normalized is None
    assert alice.needs_phone_update is True
    assert bob.mobile_normalized == PHONE
