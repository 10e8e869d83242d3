from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from psycopg import errors

from credvault.storage.errors import ConstraintViolation
from credvault.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows
        self.rowcount = len(rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Replays scripted results and records every statement."""

    def __init__(self, script):
        self.script = list(script)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.script.pop(0) if self.script else []
        if isinstance(result, Exception):
            raise result
        return FakeCursor(result)


class FakePool:
    def __init__(self, *script):
        self.conn = FakeConnection(script)

    @contextmanager
    def connection(self):
        yield self.conn


class PhoneUniqueViolation(errors.UniqueViolation):
    diag = SimpleNamespace(constraint_name="app_user_phone_number_key")


def _store(*script) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(*script)
    return store


def _statements(store):
    return store.pool.conn.statements


def _user_row(**overrides):
    row = {
        "id": 1,
        "email": "pat@example.com",
        "phone_number": None,
        "password_hash": "hash",
        "is_email_verified": False,
        "is_phone_verified": False,
        "is_active": True,
        "created_at": NOW,
        "last_login_at": None,
        "external_id": None,
    }
    row.update(overrides)
    return row


def _refresh_row(**overrides):
    row = {
        "id": 9,
        "user_id": 1,
        "token": "successor",
        "created_at": NOW,
        "expires_at": NOW + timedelta(days=7),
        "is_revoked": False,
        "revoked_at": None,
        "replaced_by": None,
        "device_info": None,
        "ip_address": None,
    }
    row.update(overrides)
    return row


def test_missing_tables_reported_at_startup():
    present = [{"oid": "public.x"}]
    store = _store(present, [{"oid": None}], present, present, [], present)

    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()

    message = str(excinfo.value)
    assert "otp_credential" in message
    assert "refresh_token" in message
    assert "app_user" not in message


def test_create_user_maps_unique_violations():
    store = _store(errors.UniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(email="pat@example.com", created_at=NOW)
    assert excinfo.value.detail == {"field": "email"}

    store = _store(PhoneUniqueViolation("duplicate key"))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user(phone_number="+15550003333", created_at=NOW)
    assert excinfo.value.detail == {"field": "phone_number"}


def test_create_user_requires_contact():
    store = _store()
    with pytest.raises(ConstraintViolation):
        store.create_user(created_at=NOW)
    assert _statements(store) == []


def test_rotate_is_a_guarded_update_then_insert():
    store = _store([{"user_id": 1}], [_refresh_row()])

    successor = store.rotate_refresh_token(
        "old", new_token="successor", created_at=NOW, expires_at=NOW + timedelta(days=7)
    )

    assert successor.token == "successor"
    (update_sql, update_params), (insert_sql, _) = _statements(store)
    assert update_sql.startswith("UPDATE refresh_token")
    assert "is_revoked = FALSE AND expires_at > %s" in update_sql
    assert update_params == (NOW, "successor", "old", NOW)
    assert insert_sql.startswith("INSERT INTO refresh_token")


def test_rotate_loser_inserts_nothing():
    store = _store([])

    assert (
        store.rotate_refresh_token(
            "old", new_token="other", created_at=NOW, expires_at=NOW + timedelta(days=7)
        )
        is None
    )
    assert len(_statements(store)) == 1


def test_refresh_token_for_missing_user_is_constraint_violation():
    store = _store(errors.ForeignKeyViolation("no user"))
    with pytest.raises(ConstraintViolation):
        store.create_refresh_token(
            user_id=77, token="t", created_at=NOW, expires_at=NOW + timedelta(days=7)
        )


def test_failed_otp_attempt_counts_exhausted_codes():
    store = _store([{"is_used": True}, {"is_used": False}])

    assert store.record_failed_otp_attempt("+15550003333", NOW, 3) == 1
    sql, params = _statements(store)[0]
    assert "attempt_count = attempt_count + 1" in sql
    assert params == (3, 3, NOW, "+15550003333")


def test_consume_otp_reports_race_loser():
    assert _store([{"id": 4}]).consume_otp(4, NOW) is True
    assert _store([]).consume_otp(4, NOW) is False


def test_apply_password_reset_runs_in_one_connection():
    store = _store([{"user_id": 1}], [], [], [{}, {}, {}])

    assert store.apply_password_reset("reset-token", "new-hash", NOW) == (1, 3)
    tables = [sql.split()[1] for sql, _ in _statements(store)]
    assert tables == [
        "password_reset_token",
        "app_user",
        "password_reset_token",
        "refresh_token",
    ]


def test_apply_password_reset_with_spent_token_changes_nothing():
    store = _store([])

    assert store.apply_password_reset("spent", "new-hash", NOW) is None
    assert len(_statements(store)) == 1


def test_second_active_role_maps_to_constraint_violation():
    store = _store(errors.UniqueViolation("one_active_role_per_user"))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_role_assignment(user_id=1, role="homeowner", assigned_at=NOW)
    assert excinfo.value.message == "user already has an active role"


def test_active_only_listing_filters_revoked_rows():
    store = _store([])
    store.list_role_assignments(1, active_only=True)

    sql, params = _statements(store)[0]
    assert "revoked_at IS NULL" in sql
    assert sql.endswith("ORDER BY assigned_at DESC, id DESC")
    assert params == (1,)


def test_role_counts_and_user_rows():
    store = _store(
        [{"role": "homeowner", "total": 2}, {"role": "platform_admin", "total": 1}],
        [_user_row(), _user_row(id=2, email="sam@example.com")],
    )

    assert store.count_active_roles() == {"homeowner": 2, "platform_admin": 1}
    users = store.list_users_with_role("homeowner")
    assert [u.email for u in users] == ["pat@example.com", "sam@example.com"]
