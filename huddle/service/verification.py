from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Optional

from huddle.logging import get_logger
from huddle.service.passwords import PasswordHasher
from huddle.service.sessions import SessionManager
from huddle.storage.common import CredentialStore
from huddle.storage.models import utcnow

logger = get_logger(__name__)

EMAIL_VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(hours=1)


class VerificationTokenManager:
    """Single-use email verification and password reset tokens.

    Tokens live on the user row. Consumption matches the token, checks
    expiry and clears it in one store update, so a token works at most once
    even under concurrent submissions.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasher,
        sessions: SessionManager,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.sessions = sessions

    def _now(self) -> datetime:
        return utcnow()

    @staticmethod
    def generate_token() -> str:
        return secrets.token_hex(32)

    def new_email_verification(self) -> tuple[str, datetime]:
        """Token and expiry for a user row that does not exist yet."""
        return self.generate_token(), self._now() + EMAIL_VERIFICATION_TTL

    def issue_email_verification_token(self, user_id: str) -> str:
        token, expires_at = self.new_email_verification()
        self.store.set_email_verification_token(user_id, token, expires_at)
        logger.info("email_verification_issued", user_id=user_id)
        return token

    def consume_email_verification_token(self, token: str) -> Optional[str]:
        if not token:
            return None
        user = self.store.consume_email_verification_token(token, self._now())
        if not user:
            return None
        logger.info("email_verified", user_id=user.id)
        return user.id

    def issue_password_reset_token(self, user_id: str) -> str:
        token = self.generate_token()
        self.store.set_password_reset_token(user_id, token, self._now() + PASSWORD_RESET_TTL)
        logger.info("password_reset_issued", user_id=user_id)
        return token

    def consume_password_reset_token(self, token: str, new_password: str) -> bool:
        if not token:
            return False
        password_hash = self.hasher.hash(new_password)
        user = self.store.consume_password_reset_token(token, password_hash, self._now())
        if not user:
            return False
        # Anyone holding an old refresh token must sign in again
        self.sessions.revoke_all_sessions(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return True
