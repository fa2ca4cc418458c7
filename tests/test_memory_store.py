from datetime import timedelta

import pytest

from huddle.storage.errors import ConstraintViolation, UserMissing
from huddle.storage.memory import MemoryStore
from huddle.storage.models import utcnow


@pytest.fixture
def mem():
    return MemoryStore(mfa_encryption_key="unit-test-key")


def _user(mem, email="bob@example.com", username="bob"):
    return mem.create_user(email, username, "1234", "hash")


class TestUsers:
    def test_email_stored_lowercase(self, mem):
        user = _user(mem, email="Bob@Example.COM")
        assert user.email == "bob@example.com"
        assert mem.get_user_by_email("BOB@example.com").id == user.id

    def test_unique_fields_reported(self, mem):
        _user(mem)
        with pytest.raises(ConstraintViolation) as exc:
            _user(mem, username="other")
        assert exc.value.field == "email"
        assert exc.value.detail == {"field": "email"}
        with pytest.raises(ConstraintViolation) as exc:
            _user(mem, email="other@example.com")
        assert exc.value.field == "username"

    def test_writes_to_unknown_user(self, mem):
        with pytest.raises(UserMissing) as exc:
            mem.enable_two_factor("missing")
        assert exc.value.user_id == "missing"
        assert exc.value.detail == {}

    def test_exported_copies_are_detached(self, mem):
        user = _user(mem)
        user.email_verified = True
        assert mem.get_user(user.id).email_verified is False


class TestTokenConsumption:
    def test_verification_token_single_use(self, mem):
        user = _user(mem)
        now = utcnow()
        mem.set_email_verification_token(user.id, "tok", now + timedelta(hours=1))
        consumed = mem.consume_email_verification_token("tok", now)
        assert consumed.email_verified is True
        assert consumed.email_verification_token is None
        assert mem.consume_email_verification_token("tok", now) is None

    def test_expired_reset_token_rejected(self, mem):
        user = _user(mem)
        now = utcnow()
        mem.set_password_reset_token(user.id, "reset", now - timedelta(seconds=1))
        assert mem.consume_password_reset_token("reset", "newhash", now) is None
        assert mem.get_user(user.id).password_hash == "hash"


class TestTwoFactorMaterial:
    def test_secret_encrypted_at_rest(self, mem):
        user = _user(mem)
        mem.set_two_factor_material(user.id, "JBSWY3DPEHPK3PXP", ["aabbccdd"])
        assert mem.users[user.id].two_factor_secret != "JBSWY3DPEHPK3PXP"
        loaded = mem.get_user(user.id)
        assert loaded.two_factor_secret == "JBSWY3DPEHPK3PXP"
        assert loaded.two_factor_enabled is False

    def test_wrong_key_reads_back_as_missing(self, mem):
        user = _user(mem)
        mem.set_two_factor_material(user.id, "JBSWY3DPEHPK3PXP", [])
        other = MemoryStore(mfa_encryption_key="different-key")
        other.users = mem.users
        assert other.get_user(user.id).two_factor_secret is None


class TestSessions:
    def test_rotate_compare_and_set(self, mem):
        user = _user(mem)
        later = utcnow() + timedelta(days=1)
        sess = mem.create_session(user.id, "t1", later)
        assert mem.rotate_session(sess.id, "t2", later, expected_refresh_token="t1")
        assert mem.rotate_session(sess.id, "t3", later, expected_refresh_token="t1") is None
        assert mem.find_session(user.id, "t2") is not None
        assert mem.find_session(user.id, "t1") is None

    def test_session_requires_user(self, mem):
        with pytest.raises(UserMissing):
            mem.create_session("ghost", "t1", utcnow() + timedelta(days=1))

    def test_expired_sweep(self, mem):
        user = _user(mem)
        now = utcnow()
        mem.create_session(user.id, "old", now - timedelta(seconds=1))
        mem.create_session(user.id, "live", now + timedelta(days=1))
        assert mem.delete_expired_sessions(now) == 1
        assert mem.find_session(user.id, "live") is not None
        assert mem.delete_user_sessions(user.id) == 1
