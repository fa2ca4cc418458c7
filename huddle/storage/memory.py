from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from huddle.logging import get_logger
from huddle.storage.cipher import SecretCipher
from huddle.storage.common import normalize_email
from huddle.storage.errors import ConstraintViolation, UserMissing
from huddle.storage.models import Session, User, utcnow


class MemoryStore:
    """In-process credential store for tests and local development.

    Records are copied on the way in and out so callers never hold a live
    reference to stored state. All mutation happens under one re-entrant lock.
    """

    def __init__(self, *, mfa_encryption_key: str) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(mfa_encryption_key)

    # users
    def create_user(
        self,
        email: str,
        username: str,
        discriminator: str,
        password_hash: str,
        *,
        date_of_birth: Optional[str] = None,
        email_verification_token: Optional[str] = None,
        email_verification_expires_at: Optional[datetime] = None,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already in use", field="email")
                if existing.username == username:
                    raise ConstraintViolation("username already taken", field="username")
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                discriminator=discriminator,
                password_hash=password_hash,
                date_of_birth=date_of_birth,
                email_verification_token=email_verification_token,
                email_verification_expires_at=email_verification_expires_at,
            )
            self.users[user.id] = user
            return self._export_user(user)

    def _export_user(self, user: User) -> User:
        return replace(
            user,
            two_factor_secret=self._cipher.decrypt(user.two_factor_secret),
            two_factor_backup_codes=list(user.two_factor_backup_codes),
        )

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._export_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return self._export_user(user)
        return None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.username == username:
                    return self._export_user(user)
        return None

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise UserMissing(user_id)
        return user

    def set_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.email_verification_token = token
            user.email_verification_expires_at = expires_at
            user.updated_at = utcnow()

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.email_verification_token == token
                    and user.email_verification_expires_at is not None
                    and user.email_verification_expires_at > now
                ):
                    user.email_verified = True
                    user.email_verification_token = None
                    user.email_verification_expires_at = None
                    user.updated_at = now
                    return self._export_user(user)
        return None

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.password_reset_token = token
            user.password_reset_expires_at = expires_at
            user.updated_at = utcnow()

    def consume_password_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if (
                    user.password_reset_token == token
                    and user.password_reset_expires_at is not None
                    and user.password_reset_expires_at > now
                ):
                    user.password_hash = password_hash
                    user.password_reset_token = None
                    user.password_reset_expires_at = None
                    user.updated_at = now
                    return self._export_user(user)
        return None

    def set_two_factor_material(
        self, user_id: str, secret: str, backup_codes: List[str]
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.two_factor_secret = self._cipher.encrypt(secret)
            user.two_factor_backup_codes = list(backup_codes)
            user.updated_at = utcnow()

    def enable_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.two_factor_enabled = True
            user.updated_at = utcnow()

    def record_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = at

    # sessions
    def create_session(
        self,
        user_id: str,
        refresh_token: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            self._require_user(user_id)
            sess = Session.new(
                user_id=user_id,
                refresh_token=refresh_token,
                expires_at=expires_at,
                device_info=device_info,
                ip_address=ip_address,
            )
            self.sessions[sess.id] = sess
            return replace(sess)

    def find_session(self, user_id: str, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.refresh_token == refresh_token:
                    return replace(sess)
        return None

    def rotate_session(
        self,
        session_id: str,
        refresh_token: str,
        expires_at: datetime,
        *,
        expected_refresh_token: Optional[str] = None,
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if expected_refresh_token is not None and sess.refresh_token != expected_refresh_token:
                return None
            sess.refresh_token = refresh_token
            sess.expires_at = expires_at
            return replace(sess)

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
