import threading
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from psycopg import errors

from venueauth.service.permissions import SubUserRole, VenuePermissions
from venueauth.storage.errors import ConstraintViolation
from venueauth.storage.models import VerificationChannel, VerificationPurpose, code_slot
from venueauth.storage.postgres import PostgresStore, _unique_field


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows, rowcount=None):
        self.rows = rows
        self.rowcount = len(rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Replays canned result sets in call order and records each statement."""

    def __init__(self, *results, error=None):
        self.results = list(results)
        self.error = error
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        return self.results.pop(0) if self.results else FakeCursor([])


def _store(tmp_path: Path, conn=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.fs_root = tmp_path
    store._tx_local = threading.local()
    store._tx_local.conn = conn
    return store


def _session_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "refresh_token": "refresh-value",
        "refresh_token_expiry": now + timedelta(days=30),
        "is_active": True,
        "device_name": "Pixel",
        "device_type": "android",
        "user_agent": None,
        "ip_address": "10.0.0.1",
        "access_token_jti": "jti-1",
        "access_token_expiry": now + timedelta(hours=1),
        "created_at": now,
        "updated_at": None,
        "last_activity_at": now,
    }
    row.update(overrides)
    return row


def test_unpinned_connect_goes_to_pool(tmp_path):
    store = _store(tmp_path)
    with pytest.raises(AssertionError):
        store.get_user("anything")


def test_pinned_connection_is_reused(tmp_path):
    conn = FakeConnection()
    store = _store(tmp_path, conn)
    with store._connect() as first, store._connect() as second:
        assert first is conn
        assert second is conn


def test_user_row_mapping_includes_codes(tmp_path):
    now = datetime.now(timezone.utc)
    user_id = uuid.uuid4()
    slot = code_slot(VerificationChannel.PHONE, VerificationPurpose.ACCOUNT_VERIFICATION)
    conn = FakeConnection(
        FakeCursor(
            [
                {
                    "id": user_id,
                    "email": "owner@example.com",
                    "phone_number": "+201012345678",
                    "venue_id": None,
                    "is_phone_verified": False,
                    "created_at": now,
                }
            ]
        ),
        FakeCursor([{"slot": slot, "code": "123456", "expires_at": now, "used": False}]),
    )
    store = _store(tmp_path, conn)

    user = store.get_user(str(user_id))

    assert user.id == str(user_id)
    assert user.venue_id is None
    assert user.is_active is True
    code = user.code_for(VerificationChannel.PHONE, VerificationPurpose.ACCOUNT_VERIFICATION)
    assert code.code == "123456"
    assert code.expires_at == now
    assert conn.statements[1][1] == (user_id,)


def test_missing_user_skips_code_lookup(tmp_path):
    conn = FakeConnection(FakeCursor([]))
    store = _store(tmp_path, conn)
    assert store.get_user_by_email(" Missing@Example.com ") is None
    assert len(conn.statements) == 1
    assert conn.statements[0][1] == ("missing@example.com",)


def test_sub_user_row_mapping():
    row = {
        "id": uuid.uuid4(),
        "venue_id": uuid.uuid4(),
        "username": "Cashier",
        "password_hash": "digest",
        "password_algo": None,
        "role": 3,
        "permissions": int(VenuePermissions.VIEW_BOOKINGS | VenuePermissions.CREATE_BOOKINGS),
        "failed_login_attempts": None,
        "created_by_sub_user_id": None,
    }
    sub_user = PostgresStore._sub_user_from_row(row)
    assert sub_user.role is SubUserRole(3)
    assert sub_user.permissions == VenuePermissions.VIEW_BOOKINGS | VenuePermissions.CREATE_BOOKINGS
    assert sub_user.password_algo == "argon2id"
    assert sub_user.failed_login_attempts == 0
    assert sub_user.created_by_sub_user_id is None


def test_sub_user_session_row_mapping(tmp_path):
    venue_id = uuid.uuid4()
    row = _session_row(
        sub_user_id=uuid.uuid4(), venue_id=venue_id, permissions=None
    )
    del row["user_id"]
    session = _store(tmp_path)._sub_user_session_from_row(row)
    assert session.venue_id == str(venue_id)
    assert session.permissions == VenuePermissions(0)
    assert session.device_name == "Pixel"


def test_rotate_returns_none_when_no_row_matches(tmp_path):
    conn = FakeConnection(FakeCursor([]))
    store = _store(tmp_path, conn)
    expiry = datetime.now(timezone.utc) + timedelta(days=30)

    assert store.rotate_refresh_token("old", "new", expiry) is None

    sql, params = conn.statements[0]
    assert "WHERE refresh_token = %s AND is_active AND refresh_token_expiry > %s" in sql
    assert params[0] == "new"
    assert params[-2] == "old"


def test_rotate_maps_returned_row(tmp_path):
    row = _session_row(refresh_token="new")
    store = _store(tmp_path, FakeConnection(FakeCursor([row])))
    session = store.rotate_refresh_token(
        "old",
        "new",
        row["refresh_token_expiry"],
        device={"device_name": "Pixel"},
    )
    assert session.id == str(row["id"])
    assert session.user_id == str(row["user_id"])
    assert session.refresh_token == "new"


def test_unique_field_reads_constraint_name():
    exc = SimpleNamespace(diag=SimpleNamespace(constraint_name="app_user_phone_number_key"))
    assert _unique_field(exc) == "phone_number"
    unknown = SimpleNamespace(diag=SimpleNamespace(constraint_name="something_else"))
    assert _unique_field(unknown) is None
    assert _unique_field(SimpleNamespace()) is None


def test_unique_violation_becomes_constraint_violation(tmp_path):
    conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
    store = _store(tmp_path, conn)
    with pytest.raises(ConstraintViolation) as exc:
        store.create_user("Owner@Example.com")
    assert exc.value.field == "email"
    assert conn.statements[0][1][1] == "owner@example.com"


def test_expired_session_cleanup_counts_both_tables(tmp_path):
    conn = FakeConnection(FakeCursor([], rowcount=2), FakeCursor([], rowcount=3))
    store = _store(tmp_path, conn)
    now = datetime.now(timezone.utc)
    assert store.delete_expired_sessions(now, now - timedelta(days=90)) == 5
    assert "DELETE FROM auth_session" in conn.statements[0][0]
    assert "DELETE FROM venue_sub_user_session" in conn.statements[1][0]


def test_get_sub_user_for_update_locks_row(tmp_path):
    conn = FakeConnection(FakeCursor([]), FakeCursor([]))
    store = _store(tmp_path, conn)
    assert store.get_sub_user("sub-1") is None
    assert store.get_sub_user("sub-1", for_update=True) is None
    assert not conn.statements[0][0].endswith("FOR UPDATE")
    assert conn.statements[1][0].endswith("FOR UPDATE")


def test_login_stamp_only_touches_active_row(tmp_path):
    conn = FakeConnection(FakeCursor([]))
    store = _store(tmp_path, conn)
    now = datetime.now(timezone.utc)

    assert store.record_sub_user_login("sub-1", now) is None

    sql, params = conn.statements[0]
    assert "WHERE id = %s AND is_active" in sql
    assert "is_active =" not in sql.split("WHERE")[0]
    assert "permissions" not in sql
    assert params == (now, "sub-1")


def test_failed_login_increments_in_place(tmp_path):
    conn = FakeConnection(FakeCursor([]))
    store = _store(tmp_path, conn)
    lock_until = datetime.now(timezone.utc) + timedelta(minutes=30)

    store.record_sub_user_login_failure("sub-1", max_attempts=5, lock_until=lock_until)

    sql, params = conn.statements[0]
    assert "failed_login_attempts = failed_login_attempts + 1" in sql
    assert "is_active" not in sql
    assert params == (5, lock_until, "sub-1")


def test_password_update_leaves_access_columns_alone(tmp_path):
    conn = FakeConnection(FakeCursor([]))
    store = _store(tmp_path, conn)
    now = datetime.now(timezone.utc)

    store.set_sub_user_password(
        "sub-1", "digest", "argon2id", must_change_password=True, changed_at=now,
        clear_lockout=True, require_active=True,
    )

    sql, _params = conn.statements[0]
    assert "locked_until = NULL" in sql
    assert sql.endswith("WHERE id = %s AND is_active RETURNING *")
    assert "role" not in sql
    assert "permissions" not in sql
