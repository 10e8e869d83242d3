import threading
from datetime import datetime, timedelta, timezone

import pytest

from credvault.storage.errors import ConstraintViolation
from credvault.storage.memory import MemoryStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return MemoryStore()


def _refresh(store, user_id, token, *, days=7, at=NOW):
    return store.create_refresh_token(
        user_id=user_id, token=token, created_at=at, expires_at=at + timedelta(days=days)
    )


def test_returned_rows_are_copies(store):
    user = store.create_user(email="copy@example.com", created_at=NOW)
    user.is_active = False

    assert store.get_user(user.id).is_active is True


def test_unique_contact_fields(store):
    store.create_user(email="a@example.com", phone_number="+15550000001", created_at=NOW)

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(email="a@example.com", created_at=NOW)
    assert excinfo.value.detail == {"field": "email"}

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(phone_number="+15550000001", created_at=NOW)
    assert excinfo.value.detail == {"field": "phone_number"}


def test_rotation_links_successor(store):
    user = store.create_user(email="r@example.com", created_at=NOW)
    _refresh(store, user.id, "first")

    successor = store.rotate_refresh_token(
        "first", new_token="second", created_at=NOW, expires_at=NOW + timedelta(days=7)
    )

    assert successor.token == "second"
    assert store.get_refresh_token("first").replaced_by == "second"
    assert (
        store.rotate_refresh_token(
            "first", new_token="third", created_at=NOW, expires_at=NOW + timedelta(days=7)
        )
        is None
    )
    assert store.get_refresh_token("third") is None


def test_parallel_rotation_has_one_winner(store):
    user = store.create_user(email="p@example.com", created_at=NOW)
    _refresh(store, user.id, "shared")
    results = []

    def rotate(n):
        results.append(
            store.rotate_refresh_token(
                "shared",
                new_token=f"next-{n}",
                created_at=NOW,
                expires_at=NOW + timedelta(days=7),
            )
        )

    threads = [threading.Thread(target=rotate, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(r is not None for r in results) == 1


def test_chain_revocation_follows_replaced_by(store):
    user = store.create_user(email="c@example.com", created_at=NOW)
    _refresh(store, user.id, "a")
    for old, new in (("a", "b"), ("b", "c")):
        store.rotate_refresh_token(
            old, new_token=new, created_at=NOW, expires_at=NOW + timedelta(days=7)
        )
    _refresh(store, user.id, "unrelated")

    assert store.revoke_refresh_chain("a", NOW) == 1
    assert store.get_refresh_token("c").is_revoked
    assert not store.get_refresh_token("unrelated").is_revoked


def test_refresh_listing_newest_first(store):
    user = store.create_user(email="l@example.com", created_at=NOW)
    _refresh(store, user.id, "older")
    _refresh(store, user.id, "newer", at=NOW + timedelta(minutes=1))

    assert [r.token for r in store.list_refresh_tokens(user.id)] == ["newer", "older"]


def test_one_active_role_enforced(store):
    user = store.create_user(email="role@example.com", created_at=NOW)
    first = store.create_role_assignment(user_id=user.id, role="homeowner", assigned_at=NOW)

    with pytest.raises(ConstraintViolation):
        store.create_role_assignment(user_id=user.id, role="contractor", assigned_at=NOW)

    assert store.revoke_role_assignment(first.id, revoked_at=NOW, notes="done")
    assert not store.revoke_role_assignment(first.id, revoked_at=NOW)
    store.create_role_assignment(user_id=user.id, role="contractor", assigned_at=NOW)
    assert store.count_active_roles() == {"contractor": 1}
    assert len(store.list_role_assignments(user.id)) == 2


def test_role_for_missing_user_rejected(store):
    with pytest.raises(ConstraintViolation):
        store.create_role_assignment(user_id=404, role="homeowner", assigned_at=NOW)


def test_password_reset_applies_atomically(store):
    user = store.create_user(email="pr@example.com", password_hash="old", created_at=NOW)
    _refresh(store, user.id, "live")
    for token in ("older", "current"):
        store.create_password_reset_token(
            user_id=user.id, token=token, created_at=NOW, expires_at=NOW + timedelta(hours=24)
        )

    assert store.apply_password_reset("current", "new", NOW) == (user.id, 1)
    assert store.get_user(user.id).password_hash == "new"
    assert store.get_password_reset_token("older").is_used
    assert store.apply_password_reset("older", "newer", NOW) is None


def test_stale_refresh_tokens_purged_by_cutoff(store):
    user = store.create_user(email="s@example.com", created_at=NOW)
    _refresh(store, user.id, "expired", days=1)
    _refresh(store, user.id, "revoked")
    store.revoke_refresh_token("revoked", NOW)
    _refresh(store, user.id, "live", days=60)

    assert store.delete_stale_refresh_tokens(NOW + timedelta(days=2)) == 2
    assert store.get_refresh_token("live") is not None
