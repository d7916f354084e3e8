import pytest
from fastapi import status

from chatbook import crud, ledger, models
from chatbook.errors import Conflict
from chatbook.schemas import ProfileSync

from conftest import auth_headers, create_user


def sync(client, uid, **fields):
    return client.post("/users/sync-profile", json=fields, headers=auth_headers(uid))


def test_sync_profile_creates_user_and_ledger_link(client, db_session):
    response = sync(
        client,
        "alice",
        username="Alice.W",
        display_name="Alice",
        email="alice@example.com",
        mobile="+91 98765-43210",
    )
    assert response.status_code == status.HTTP_200_OK
    data = response.json()
    assert data["uid"] == "alice"
    assert data["username"] == "alice.w"
    assert data["mobile"] == "+919876543210"
    assert data["mobile_normalized"] == "9876543210"
    assert data["has_push_token"] is False

    assert ledger.get_current_link(db_session, "9876543210").user_id == "alice"


def test_sync_profile_rejects_phone_owned_by_other(client):
    assert sync(client, "alice", mobile="9876543210").status_code == status.HTTP_200_OK

    response = sync(client, "bob", mobile="+91 9876543210")
    assert response.status_code == status.HTTP_409_CONFLICT
    assert response.json()["kind"] == "conflict"


def test_sync_profile_rejects_short_phone(client):
    response = sync(client, "alice", mobile="12345")
    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["kind"] == "validation"


def test_sync_profile_rejects_taken_username(client):
    sync(client, "alice", username="sam")
    response = sync(client, "bob", username="SAM")
    assert response.status_code == status.HTTP_409_CONFLICT


def test_changing_phone_moves_ledger_link(client, db_session):
    sync(client, "alice", mobile="9876543210")
    sync(client, "alice", mobile="9123456780")

    assert ledger.get_current_link(db_session, "9876543210") is None
    assert ledger.get_current_link(db_session, "9123456780").user_id == "alice"


def test_read_me(client):
    response = client.get("/users/me", headers=auth_headers("alice"))
    assert response.status_code == status.HTTP_404_NOT_FOUND

    sync(client, "alice", display_name="Alice")
    response = client.get("/users/me", headers=auth_headers("alice"))
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["display_name"] == "Alice"


def test_update_push_token(client):
    response = client.put(
        "/users/push-token", json={"push_token": "tok"}, headers=auth_headers("alice")
    )
    assert response.status_code == status.HTTP_404_NOT_FOUND

    sync(client, "alice")
    response = client.put(
        "/users/push-token", json={"push_token": "tok"}, headers=auth_headers("alice")
    )
    assert response.status_code == status.HTTP_200_OK
    assert response.json()["has_push_token"] is True


def test_phone_status(client, db_session):
    create_user(db_session, "alice", mobile="9876543210")
    ledger.set_current_owner(db_session, "alice", "9123456780", "9876543210")
    create_user(db_session, "bob", mobile="9876543210")

    response = client.get(
        "/users/phone-status", params={"phone": "+91 98765 43210"}, headers=auth_headers("alice")
    )
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {
        "phone_normalized": "9876543210",
        "registered": True,
        "owned_by_caller": False,
        "previously_owned_by_other": False,
    }

    response = client.get(
        "/users/phone-status", params={"phone": "9876543210"}, headers=auth_headers("bob")
    )
    assert response.json()["owned_by_caller"] is True
    assert response.json()["previously_owned_by_other"] is True

    response = client.get(
        "/users/phone-status", params={"phone": "123"}, headers=auth_headers("bob")
    )
    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_phone_lost_to_concurrent_owner_leaves_record_unchanged(db_session, monkeypatch):
    create_user(db_session, "alice", mobile="9876543210")
    create_user(db_session, "bob", mobile="9123456780")
    # another request claimed the phone after the availability check passed
    monkeypatch.setattr(crud.ledger, "is_phone_taken", lambda *args: False)

    with pytest.raises(Conflict):
        crud.sync_profile(db_session, "bob", ProfileSync(mobile="9876543210", display_name="Bobby"))

    db_session.expire_all()
    bob = crud.get_user_by_uid(db_session, "bob")
    assert bob.mobile_normalized == "9123456780"
    assert bob.display_name == "Bob"
    assert ledger.get_current_link(db_session, "9123456780").user_id == "bob"
    assert ledger.get_current_link(db_session, "9876543210").user_id == "alice"


def test_new_user_losing_phone_race_is_not_created(db_session, monkeypatch):
    create_user(db_session, "alice", mobile="9876543210")
    monkeypatch.setattr(crud.ledger, "is_phone_taken", lambda *args: False)

    with pytest.raises(Conflict):
        crud.sync_profile(db_session, "bob", ProfileSync(mobile="9876543210"))

    assert crud.get_user_by_uid(db_session, "bob") is None


def test_short_unknown_reference_does_not_match_phone_suffix(db_session):
    db_session.add(models.User(uid="legacy", mobile="9876543217"))
    db_session.commit()

    assert crud.resolve_receiver(db_session, "user7") is None
    assert crud.resolve_receiver(db_session, "76543217").uid == "legacy"
