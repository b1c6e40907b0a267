import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from sessionvault.logging import get_logger
from sessionvault.storage.errors import (
    DuplicateFingerprint,
    ForeignKeyViolation,
    RecordExpired,
    RecordNotFound,
    StoreUnavailable,
    UniqueConstraintViolation,
)
from sessionvault.storage.models import AuthProvider
from sessionvault.storage.postgres import PostgresStore

NOW = datetime(2030, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows=None, rowcount=None):
        self.rows = rows or []
        self.rowcount = len(self.rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Replays scripted results in order and records every statement."""

    def __init__(self, script):
        self.script = list(script)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        outcome = self.script.pop(0) if self.script else FakeCursor()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePool:
    def __init__(self, *script, fail_with=None):
        self.conn = FakeConnection(script)
        self.fail_with = fail_with
        self.closed = False

    @contextlib.contextmanager
    def connection(self):
        if self.fail_with is not None:
            raise self.fail_with
        yield self.conn

    def close(self):
        self.closed = True


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.logger = get_logger("test")
    store.pool = pool
    return store


def _token_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "token_fingerprint": "f" * 64,
        "device": "Laptop",
        "expires_at": NOW + timedelta(days=7),
        "revoked": False,
        "created_at": NOW,
    }
    row.update(overrides)
    return row


def _user_row(**overrides):
    row = {
        "id": uuid.uuid4(),
        "email": "a@x.com",
        "name": "A",
        "password_hash": "hash",
        "federated_subject_id": None,
        "auth_provider": "local",
        "avatar_url": None,
        "last_login_at": NOW,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


class TestConsume:
    def test_consume_is_one_conditional_delete(self):
        row = _token_row()
        pool = FakePool(FakeCursor([row]))
        record = _store(pool).consume_refresh_token("f" * 64, NOW)

        assert record.user_id == str(row["user_id"])
        assert record.device == "Laptop"
        [(sql, params)] = pool.conn.statements
        assert sql.startswith("DELETE FROM refresh_token")
        assert "revoked = FALSE" in sql
        assert "RETURNING *" in sql
        assert params == ("f" * 64,)

    def test_no_row_is_not_found(self):
        with pytest.raises(RecordNotFound):
            _store(FakePool(FakeCursor([]))).consume_refresh_token("f" * 64, NOW)

    def test_expired_row_is_deleted_and_reported(self):
        pool = FakePool(FakeCursor([_token_row(expires_at=NOW - timedelta(seconds=1))]))
        with pytest.raises(RecordExpired):
            _store(pool).consume_refresh_token("f" * 64, NOW)
        assert len(pool.conn.statements) == 1


class TestConstraintMapping:
    def test_duplicate_fingerprint(self):
        pool = FakePool(errors.UniqueViolation("duplicate key value"))
        with pytest.raises(DuplicateFingerprint):
            _store(pool).store_refresh_token("u", "f" * 64, "Laptop", NOW)

    def test_unknown_user_on_store(self):
        pool = FakePool(errors.ForeignKeyViolation("violates foreign key"))
        with pytest.raises(ForeignKeyViolation):
            _store(pool).store_refresh_token("u", "f" * 64, "Laptop", NOW)

    def test_duplicate_email(self):
        pool = FakePool(errors.UniqueViolation("duplicate key value"))
        with pytest.raises(UniqueConstraintViolation):
            _store(pool).create_user("a@x.com", "A", password_hash="hash")

    def test_touch_last_login_for_missing_user(self):
        pool = FakePool(FakeCursor(rowcount=0))
        with pytest.raises(ForeignKeyViolation):
            _store(pool).touch_last_login("u", NOW)


class TestAvailability:
    def test_operational_error_is_store_unavailable(self):
        pool = FakePool(psycopg.OperationalError("connection refused"))
        with pytest.raises(StoreUnavailable):
            _store(pool).get_user_by_email("a@x.com")

    def test_pool_timeout_is_store_unavailable(self):
        pool = FakePool(fail_with=PoolTimeout("couldn't get a connection"))
        with pytest.raises(StoreUnavailable):
            _store(pool).get_user("u")


class TestRowMapping:
    def test_create_user_maps_returned_row(self):
        row = _user_row(auth_provider="google", federated_subject_id="sub-1", password_hash=None)
        pool = FakePool(FakeCursor([row]))
        identity = _store(pool).create_user(
            "a@x.com",
            "A",
            auth_provider=AuthProvider.GOOGLE,
            federated_subject_id="sub-1",
        )
        assert identity.id == str(row["id"])
        assert identity.auth_provider is AuthProvider.GOOGLE
        assert identity.has_password is False
        _, params = pool.conn.statements[0]
        assert params[1:] == ("a@x.com", "A", None, "sub-1", "google", None)

    def test_missing_user_is_none(self):
        assert _store(FakePool(FakeCursor([]))).get_user_by_email("a@x.com") is None

    def test_bulk_revoke_reports_rowcount(self):
        pool = FakePool(FakeCursor(rowcount=3))
        assert _store(pool).revoke_user_refresh_tokens("u") == 3
        sql, _ = pool.conn.statements[0]
        assert sql.startswith("UPDATE refresh_token SET revoked = TRUE")

    def test_revoke_single_reports_whether_deleted(self):
        assert _store(FakePool(FakeCursor(rowcount=1))).revoke_refresh_token("f") is True
        assert _store(FakePool(FakeCursor(rowcount=0))).revoke_refresh_token("f") is False


def test_schema_check_names_missing_tables():
    pool = FakePool(FakeCursor([{"oid": "app_user"}]), FakeCursor([{"oid": None}]))
    with pytest.raises(RuntimeError, match="refresh_token"):
        _store(pool)._verify_required_schema()


def test_close_closes_pool():
    pool = FakePool()
    _store(pool).close()
    assert pool.closed is True
