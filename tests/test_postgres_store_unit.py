from contextlib import contextmanager
from datetime import timedelta

import pytest
from psycopg import errors

from credkeep.storage.errors import DuplicateRecord, MissingReference
from credkeep.storage.models import RefreshToken, Role, utcnow
from credkeep.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None


class FakeConnection:
    """Replays scripted cursors in order and records every statement."""

    def __init__(self, script):
        self.script = list(script)
        self.statements = []
        self.transactions = 0

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if not self.script:
            return FakeCursor()
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(script):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    conn = FakeConnection(script)
    store.pool = FakePool(conn)
    store.dsn = "postgresql://unused"
    return store, conn


def _user_row(**overrides):
    row = {
        "id": "6b0f7c52-8f7e-4d4a-9a0c-3f1d1e2b4c5d",
        "email": "a@example.com",
        "password_hash": "$argon2id$hash",
        "password_algo": "argon2id",
        "first_name": "Ada",
        "last_name": None,
        "email_verified": False,
        "tfa_enabled": False,
        "tfa_secret": None,
        "roles": ["ROLE_USER"],
        "created_at": utcnow(),
    }
    row.update(overrides)
    return row


def test_user_from_row_maps_roles_and_flags():
    user = PostgresStore._user_from_row(
        _user_row(roles=["ROLE_USER", "ROLE_ADMIN"], tfa_enabled=True, tfa_secret="ABC")
    )

    assert user.roles == {Role.USER, Role.ADMIN}
    assert user.role_names == ["ROLE_ADMIN", "ROLE_USER"]
    assert user.tfa_enabled is True
    assert user.tfa_secret == "ABC"


def test_create_user_maps_unique_violation():
    store, _ = _store([errors.UniqueViolation("duplicate key")])

    with pytest.raises(DuplicateRecord) as exc_info:
        store.create_user("A@example.com", "hash")

    assert exc_info.value.detail == {"field": "email"}


def test_create_user_lowercases_email_and_inserts_roles():
    store, conn = _store([FakeCursor(), FakeCursor(), FakeCursor([_user_row()])])

    user = store.create_user("A@Example.com", "hash", first_name="Ada")

    insert_user, insert_role, _ = conn.statements
    assert insert_user[1][1] == "a@example.com"
    assert insert_role[1][1] == "ROLE_USER"
    assert conn.transactions == 1
    assert user.email == "a@example.com"


def test_consume_reset_token_stops_when_update_matches_nothing():
    """A used, expired or unknown token changes nothing."""
    store, conn = _store([FakeCursor([])])

    assert store.consume_password_reset_token("tok", "newhash") is None

    assert len(conn.statements) == 1
    sql, params = conn.statements[0]
    assert "used = false" in sql
    assert "RETURNING user_id" in sql
    assert params[0] == "tok"


def test_consume_reset_token_updates_password_and_revokes_sessions():
    user_id = "6b0f7c52-8f7e-4d4a-9a0c-3f1d1e2b4c5d"
    store, conn = _store(
        [
            FakeCursor([{"user_id": user_id}]),
            FakeCursor(rowcount=1),
            FakeCursor(rowcount=2),
            FakeCursor([_user_row(password_hash="newhash")]),
        ]
    )

    user = store.consume_password_reset_token("tok", "newhash")

    assert user.password_hash == "newhash"
    assert conn.transactions == 1
    statements = [sql for sql, _ in conn.statements]
    assert statements[1].startswith("UPDATE app_user SET password_hash")
    assert statements[2] == "DELETE FROM refresh_tokens WHERE user_id = %s"


def test_rotate_refresh_token_reports_lost_race():
    store, conn = _store([FakeCursor([])])
    replacement = RefreshToken(
        token="new", user_id="u1", expiry_date=utcnow() + timedelta(days=7)
    )

    assert store.rotate_refresh_token("old", replacement) is False
    assert len(conn.statements) == 1


def test_save_refresh_token_maps_missing_user():
    store, _ = _store([errors.ForeignKeyViolation("fk")])
    record = RefreshToken(token="t", user_id="missing", expiry_date=utcnow())

    with pytest.raises(MissingReference):
        store.save_refresh_token(record)


def test_activate_tfa_requires_matching_secret():
    store, conn = _store([FakeCursor([])])

    assert store.activate_tfa("u1", "SECRET") is None
    assert "tfa_secret = %s" in conn.statements[0][0]


def test_missing_schema_is_reported():
    store, _ = _store([FakeCursor([{"oid": "app_user"}])] + [FakeCursor([{"oid": None}])] * 5)

    with pytest.raises(RuntimeError) as exc_info:
        store._verify_required_schema()

    assert "refresh_tokens" in str(exc_info.value)
    assert "app_user" not in str(exc_info.value)


def test_purge_counts_rows():
    store, _ = _store([FakeCursor(rowcount=3), FakeCursor(rowcount=1), FakeCursor(rowcount=0)])

    counts = store.purge_expired_tokens()

    assert counts == {
        "refresh_tokens": 3,
        "password_reset_tokens": 1,
        "email_verification_tokens": 0,
    }
