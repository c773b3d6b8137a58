from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from tokenward.logging import get_logger
from tokenward.storage.errors import ConstraintViolation, StoreConflict, StoreUnavailable
from tokenward.storage.models import DeviceInfo, Location, Session
from tokenward.storage.postgres import PostgresStore, _json_field, _session_from_row, _user_from_row

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, results, raises=None):
        self.results = list(results)
        self.raises = raises
        self.executed = []

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        return self.results.pop(0) if self.results else FakeCursor()


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    def connection(self):
        pool = self

        class _Ctx:
            def __enter__(self):
                if pool.error is not None:
                    raise pool.error
                return pool.conn

            def __exit__(self, *exc):
                return False

        return _Ctx()


def _store(conn=None, error=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit"
    store.pool = FakePool(conn, error)
    store._clock = lambda: NOW
    store.logger = get_logger("tests.postgres")
    return store


def _session_row(**overrides):
    row = {
        "id": "sess-1",
        "user_id": "user-1",
        "access_token": "a-1",
        "refresh_token": "r-1",
        "access_token_expires_at": NOW + timedelta(minutes=15),
        "refresh_token_expires_at": NOW + timedelta(days=7),
        "expires_at": NOW + timedelta(days=30),
        "ip_address": "10.0.0.1",
        "user_agent": "Firefox/121.0",
        "device_info": {"browser": "Firefox", "os": "Linux", "device": "Desktop"},
        "location": '{"country": "US", "city": "New York", "region": "NY"}',
        "is_active": True,
        "last_activity": NOW,
        "created_at": NOW,
        "updated_at": NOW,
        "deactivated_at": None,
    }
    row.update(overrides)
    return row


def _user_row(**overrides):
    row = {
        "id": "user-1",
        "email": "alice@example.com",
        "password_hash": "hash",
        "role": "user",
        "is_active": True,
        "login_attempts": 0,
        "lock_until": None,
        "last_login": None,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def test_session_row_mapping_decodes_json_columns():
    session = _session_from_row(_session_row())
    assert session.device_info == DeviceInfo("Firefox", "Linux", "Desktop")
    assert session.location == Location("US", "New York", "NY")
    assert session.is_active


def test_json_field_tolerates_garbage():
    assert _json_field("not json") == {}
    assert _json_field(None) == {}
    assert _json_field('["x"]') == {}


def test_user_row_mapping_defaults():
    user = _user_from_row(_user_row(login_attempts=None, role=None))
    assert user.login_attempts == 0
    assert user.role == "user"


def test_operational_error_becomes_store_unavailable():
    store = _store(error=psycopg.OperationalError("server closed the connection"))
    with pytest.raises(StoreUnavailable):
        store.get_session("sess-1")


def test_rotate_is_single_guarded_update():
    conn = FakeConnection([FakeCursor([_session_row(access_token="a-2", refresh_token="r-2")])])
    store = _store(conn)
    rotated = store.rotate_tokens(
        "sess-1", "r-1", "a-2", "r-2", NOW + timedelta(minutes=15), NOW + timedelta(days=7)
    )
    assert rotated.refresh_token == "r-2"
    assert len(conn.executed) == 1
    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE auth_session SET")
    assert "WHERE id = %s AND refresh_token = %s AND is_active RETURNING *" in sql
    assert params[-2:] == ("sess-1", "r-1")


def test_rotate_without_match_is_conflict():
    store = _store(FakeConnection([FakeCursor([])]))
    with pytest.raises(StoreConflict):
        store.rotate_tokens(
            "sess-1", "stale", "a-2", "r-2", NOW + timedelta(minutes=15), NOW + timedelta(days=7)
        )


def test_create_session_maps_integrity_errors():
    session = Session(
        id="sess-1",
        user_id="ghost",
        access_token="a-1",
        refresh_token="r-1",
        access_token_expires_at=NOW,
        refresh_token_expires_at=NOW,
        expires_at=NOW,
    )
    store = _store(FakeConnection([], raises=errors.ForeignKeyViolation("fk")))
    with pytest.raises(ConstraintViolation, match="user does not exist"):
        store.create_session(session)

    store = _store(FakeConnection([], raises=errors.UniqueViolation("dup")))
    with pytest.raises(ConstraintViolation, match="refresh token"):
        store.create_session(session)


def test_create_user_duplicate_email():
    store = _store(FakeConnection([], raises=errors.UniqueViolation("dup")))
    with pytest.raises(ConstraintViolation):
        store.create_user("Alice@Example.com", "hash")


def test_increment_login_attempts_is_one_statement():
    conn = FakeConnection([FakeCursor([_user_row(login_attempts=5, lock_until=NOW + timedelta(hours=2))])])
    store = _store(conn)
    updated = store.increment_login_attempts(
        "user-1", threshold=5, lock_until=NOW + timedelta(hours=2), now=NOW
    )
    assert updated.login_attempts == 5
    assert len(conn.executed) == 1
    sql, params = conn.executed[0]
    assert "login_attempts = CASE" in sql
    assert params["threshold"] == 5
    assert params["now"] == NOW


def test_increment_unknown_user():
    store = _store(FakeConnection([FakeCursor([])]))
    with pytest.raises(ConstraintViolation):
        store.increment_login_attempts("missing", threshold=5, lock_until=NOW, now=NOW)


def test_deactivate_uses_rowcount():
    store = _store(FakeConnection([FakeCursor(rowcount=1), FakeCursor(rowcount=0)]))
    assert store.deactivate("sess-1") is True
    assert store.deactivate("sess-1") is False


def test_deactivate_all_excludes_current():
    conn = FakeConnection([FakeCursor(rowcount=2)])
    store = _store(conn)
    assert store.deactivate_all_for_user("user-1", except_session_id="sess-1") == 2
    sql, params = conn.executed[0]
    assert "id IS DISTINCT FROM %s" in sql
    assert params == (NOW, NOW, "user-1", "sess-1")


def test_find_by_refresh_token_filters_expiry():
    conn = FakeConnection([FakeCursor([_session_row()])])
    store = _store(conn)
    assert store.find_by_refresh_token("r-1").id == "sess-1"
    sql, params = conn.executed[0]
    assert "refresh_token_expires_at > %s AND expires_at > %s" in sql
    assert params == ("r-1", NOW, NOW)


def test_delete_expired_reports_rowcount():
    store = _store(FakeConnection([FakeCursor(rowcount=3)]))
    assert store.delete_expired(NOW) == 3
