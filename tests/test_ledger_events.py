import pytest
from fastapi import status

from chatbook import ledger_events
from chatbook.errors import NotFound, ValidationFailed
from chatbook.push import format_amount
from chatbook.schemas import LedgerEventSync

from conftest import auth_headers, create_user


@pytest.fixture()
def contacts(db_session):
    alice = create_user(db_session, "alice", mobile="9876543210", push_token="tok-alice")
    bob = create_user(db_session, "bob", mobile="9123456780", push_token="tok-bob")
    return alice, bob


def _event(**fields):
    fields.setdefault("peer_user_id", "bob")
    fields.setdefault("origin_txn_id", "t-1")
    return LedgerEventSync(**fields)


def test_normalizers():
    assert ledger_events.normalize_op("update") == ledger_events.UPDATE
    assert ledger_events.normalize_op("delete") == ledger_events.DELETE
    assert ledger_events.normalize_op("upsert") == ledger_events.CREATE
    assert ledger_events.normalize_op(None) == ledger_events.CREATE

    assert ledger_events.normalize_entry_type("get") == ledger_events.GET
    assert ledger_events.normalize_entry_type("refund") == ledger_events.PAID

    assert ledger_events.normalize_amount(-250.5) == 250.5
    assert ledger_events.normalize_amount(None) == 0.0
    assert ledger_events.normalize_amount(float("nan")) == 0.0


def test_format_amount():
    assert format_amount(1500) == "1,500"
    assert format_amount(12.5) == "12.50"


def test_relay_pushes_ledger_event(db_session, push_relay, contacts):
    outcome = ledger_events.sync_ledger_event(
        db_session, push_relay, "alice", _event(amount=1500, entry_type="get", note=" lunch ", timestamp=42)
    )

    assert outcome == ledger_events.LedgerSyncOutcome(True, False, "ledger:alice:t-1:create", None)
    token, payload = push_relay.sent[0]
    assert token == "tok-bob"
    data = payload["data"]
    assert data["type"] == "ledger_event"
    assert data["op"] == "create"
    assert data["entryType"] == "get"
    assert data["amount"] == "1500"
    assert data["note"] == "lunch"
    assert data["timestamp"] == "42"
    assert data["version"] == "1"
    assert data["sourceUserName"] == "Alice"
    assert all(isinstance(value, str) for value in data.values())
    assert payload["notification"]["body"] == "Alice recorded Rs 1,500 (get) - lunch"


def test_client_idempotency_key_is_kept(db_session, push_relay, contacts):
    outcome = ledger_events.sync_ledger_event(
        db_session, push_relay, "alice", _event(op="update", amount=10, idempotency_key="k-9", version=3)
    )

    assert outcome.idempotency_key == "k-9"
    assert push_relay.sent[0][1]["data"]["version"] == "3"


def test_delete_needs_no_amount(db_session, push_relay, contacts):
    outcome = ledger_events.sync_ledger_event(db_session, push_relay, "alice", _event(op="delete"))

    assert outcome.delivered is True
    assert outcome.idempotency_key == "ledger:alice:t-1:delete"
    assert push_relay.sent[0][1]["data"]["amount"] == "0"


@pytest.mark.parametrize(
    "fields",
    [
        {"peer_user_id": "  ", "amount": 5},
        {"origin_txn_id": "", "amount": 5},
        {"amount": 0},
        {"amount": None},
    ],
)
def test_relay_guards(db_session, push_relay, contacts, fields):
    with pytest.raises(ValidationFailed):
        ledger_events.sync_ledger_event(db_session, push_relay, "alice", _event(**fields))
    assert push_relay.sent == []


def test_unknown_peer(db_session, push_relay, contacts):
    with pytest.raises(NotFound):
        ledger_events.sync_ledger_event(db_session, push_relay, "alice", _event(peer_user_id="nobody", amount=5))


def test_peer_resolved_by_record_id(db_session, push_relay, contacts):
    _, bob = contacts
    outcome = ledger_events.sync_ledger_event(
        db_session, push_relay, "alice", _event(peer_user_id=str(bob.id), amount=5)
    )

    assert outcome.delivered is True
    assert push_relay.sent[0][0] == "tok-bob"


def test_peer_without_push_token_is_queued(db_session, push_relay, contacts):
    create_user(db_session, "carol")
    outcome = ledger_events.sync_ledger_event(
        db_session, push_relay, "alice", _event(peer_user_id="carol", amount=5)
    )

    assert outcome == ledger_events.LedgerSyncOutcome(
        False, True, "ledger:alice:t-1:create", "Receiver push token missing"
    )
    assert push_relay.sent == []


def test_push_failure_is_queued(db_session, push_relay, contacts):
    push_relay.raise_with = RuntimeError("gateway down")
    outcome = ledger_events.sync_ledger_event(db_session, push_relay, "alice", _event(amount=5))

    assert outcome.delivered is False
    assert outcome.queued is True
    assert outcome.note == "Push delivery failed"


def test_sync_endpoint(client, db_session, push_relay, contacts):
    response = client.post(
        "/ledger/sync",
        json={"peer_user_id": "bob", "origin_txn_id": "t-7", "amount": 99.5, "entry_type": "paid"},
        headers=auth_headers("alice"),
    )

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {
        "delivered": True,
        "queued": False,
        "idempotency_key": "ledger:alice:t-7:create",
        "note": None,
    }
    assert push_relay.sent[0][1]["notification"]["body"] == "Alice recorded Rs 99.50 (paid)"


def test_sync_endpoint_errors(client, contacts):
    response = client.post(
        "/ledger/sync", json={"peer_user_id": "bob", "origin_txn_id": "t-7"}, headers=auth_headers("alice")
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["kind"] == "validation"

    response = client.post(
        "/ledger/sync",
        json={"peer_user_id": "ghost", "origin_txn_id": "t-7", "amount": 1},
        headers=auth_headers("alice"),
    )
    assert response.status_code == status.HTTP_404_NOT_FOUND

    response = client.post("/ledger/sync", json={"peer_user_id": "bob", "origin_txn_id": "t-7", "amount": 1})
    assert response.status_code == status.HTTP_401_UNAUTHORIZED
