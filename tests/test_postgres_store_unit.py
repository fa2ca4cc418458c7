import json
from contextlib import contextmanager
from datetime import timedelta
from types import SimpleNamespace

import pytest
from psycopg import errors

from huddle.logging import get_logger
from huddle.storage.cipher import SecretCipher
from huddle.storage.errors import ConstraintViolation, UserMissing
from huddle.storage.models import utcnow
from huddle.storage.postgres import PostgresStore


class _UniqueViolation(errors.UniqueViolation):
    def __init__(self, constraint):
        super().__init__("duplicate key value violates unique constraint")
        self._constraint = constraint

    @property
    def diag(self):
        return SimpleNamespace(constraint_name=self._constraint)


class FakeCursor:
    def __init__(self, row=None, rowcount=1):
        self.row = row
        self.rowcount = rowcount

    def fetchone(self):
        return self.row


class FakeConnection:
    """Records statements and replays scripted results in order."""

    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    def execute(self, query, params=None):
        self.calls.append((" ".join(query.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _store(*results):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.conn = FakeConnection(results)
    store.pool = FakePool(store.conn)
    store.logger = get_logger("test")
    store._cipher = SecretCipher("unit-test-key")
    return store


def _user_row(**overrides):
    now = utcnow()
    row = {
        "id": "u-1",
        "email": "bob@example.com",
        "username": "bob",
        "discriminator": "4321",
        "password_hash": "hash",
        "date_of_birth": "1990-01-01",
        "email_verified": False,
        "email_verification_token": None,
        "email_verification_expires_at": None,
        "password_reset_token": None,
        "password_reset_expires_at": None,
        "two_factor_secret": None,
        "two_factor_enabled": False,
        "two_factor_backup_codes": [],
        "last_login_at": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


def _session_row(**overrides):
    now = utcnow()
    row = {
        "id": "s-1",
        "user_id": "u-1",
        "refresh_token": "t2",
        "device_info": None,
        "ip_address": "10.0.0.1",
        "expires_at": now + timedelta(days=7),
        "created_at": now,
    }
    row.update(overrides)
    return row


class TestCreateUser:
    def test_email_is_normalized(self):
        store = _store(FakeCursor(_user_row()))
        user = store.create_user(" Bob@Example.com ", "bob", "4321", "hash")
        assert user.id == "u-1"
        _, params = store.conn.calls[0]
        assert params[1] == "bob@example.com"

    @pytest.mark.parametrize(
        "constraint,field",
        [("app_user_email_key", "email"), ("app_user_username_key", "username")],
    )
    def test_unique_violation_names_field(self, constraint, field):
        store = _store(_UniqueViolation(constraint))
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user("bob@example.com", "bob", "4321", "hash")
        assert exc.value.field == field
        assert exc.value.detail == {"field": field}

    def test_unknown_constraint_names_no_field(self):
        store = _store(_UniqueViolation("app_user_pkey"))
        with pytest.raises(ConstraintViolation) as exc:
            store.create_user("bob@example.com", "bob", "4321", "hash")
        assert exc.value.field is None
        assert exc.value.detail == {}
        assert exc.value.context == {"constraint": "app_user_pkey"}


class TestUserRows:
    def test_backup_codes_and_secret_decoded(self):
        store = _store()
        row = _user_row(
            two_factor_secret=store._cipher.encrypt("JBSWY3DPEHPK3PXP"),
            two_factor_backup_codes=json.dumps(["aabbccdd", "11223344"]),
        )
        user = store._user_from_row(row)
        assert user.two_factor_secret == "JBSWY3DPEHPK3PXP"
        assert user.two_factor_backup_codes == ["aabbccdd", "11223344"]

    def test_missing_user_on_update(self):
        store = _store(FakeCursor(rowcount=0))
        with pytest.raises(UserMissing) as exc:
            store.enable_two_factor("ghost")
        assert exc.value.user_id == "ghost"

    def test_two_factor_material_is_encrypted_before_write(self):
        store = _store()
        store.set_two_factor_material("u-1", "JBSWY3DPEHPK3PXP", ["aabbccdd"])
        query, params = store.conn.calls[0]
        assert "two_factor_backup_codes = %s::jsonb" in query
        assert params[0] != "JBSWY3DPEHPK3PXP"
        assert store._cipher.decrypt(params[0]) == "JBSWY3DPEHPK3PXP"
        assert params[1] == '["aabbccdd"]'
        assert params[2] == "u-1"


class TestTokenConsumption:
    def test_verification_consumed_in_one_update(self):
        store = _store(FakeCursor(_user_row(email_verified=True)))
        now = utcnow()
        user = store.consume_email_verification_token("tok", now)
        assert user.email_verified is True
        query, params = store.conn.calls[0]
        assert query.startswith("UPDATE app_user SET email_verified = TRUE")
        assert "email_verification_token = NULL" in query
        assert "WHERE email_verification_token = %s AND email_verification_expires_at > %s" in query
        assert query.endswith("RETURNING *")
        assert params == (now, "tok", now)

    def test_unmatched_reset_token_returns_none(self):
        store = _store(FakeCursor(None))
        now = utcnow()
        assert store.consume_password_reset_token("tok", "newhash", now) is None
        query, params = store.conn.calls[0]
        assert "WHERE password_reset_token = %s AND password_reset_expires_at > %s" in query
        assert params == ("newhash", now, "tok", now)


class TestSessions:
    def test_rotate_compare_and_set(self):
        store = _store(FakeCursor(_session_row()))
        expires = utcnow() + timedelta(days=7)
        sess = store.rotate_session("s-1", "t2", expires, expected_refresh_token="t1")
        assert sess.refresh_token == "t2"
        assert sess.device_info == "Unknown"
        query, params = store.conn.calls[0]
        assert query == (
            "UPDATE auth_session SET refresh_token = %s, expires_at = %s "
            "WHERE id = %s AND refresh_token = %s RETURNING *"
        )
        assert params == ("t2", expires, "s-1", "t1")

    def test_rotate_lost_race_returns_none(self):
        store = _store(FakeCursor(None))
        expires = utcnow()
        assert store.rotate_session("s-1", "t3", expires, expected_refresh_token="t1") is None

    def test_unconditional_rotate(self):
        store = _store(FakeCursor(_session_row()))
        expires = utcnow()
        store.rotate_session("s-1", "t2", expires)
        query, params = store.conn.calls[0]
        assert "AND refresh_token" not in query
        assert params == ("t2", expires, "s-1")

    def test_create_session_for_missing_user(self):
        store = _store(errors.ForeignKeyViolation("no such user"))
        with pytest.raises(UserMissing):
            store.create_session("ghost", "t1", utcnow())

    def test_sweep_deletes_expired(self):
        store = _store(FakeCursor(rowcount=3))
        now = utcnow()
        assert store.delete_expired_sessions(now) == 3
        assert store.conn.calls[0] == ("DELETE FROM auth_session WHERE expires_at <= %s", (now,))


class TestSchema:
    def test_index_failure_does_not_abort_startup(self):
        store = _store(FakeCursor(), errors.InsufficientPrivilege("denied"))
        store.ensure_schema()
        index_calls = [q for q, _ in store.conn.calls if "INDEX" in q]
        assert len(index_calls) == 6
