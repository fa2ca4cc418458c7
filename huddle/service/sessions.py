from __future__ import annotations

from typing import Optional

from huddle.logging import get_logger
from huddle.service.tokens import TokenService
from huddle.storage.common import CredentialStore
from huddle.storage.models import Session, utcnow

logger = get_logger(__name__)


class SessionManager:
    """Owns the lifecycle of refresh-token sessions.

    A session is live only while ``expires_at`` is in the future. Lookups
    enforce that themselves instead of trusting the sweep to have run.
    """

    def __init__(self, store: CredentialStore, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens

    def create_session(
        self,
        user_id: str,
        token_id: str,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        return self.store.create_session(
            user_id,
            token_id,
            self.tokens.refresh_expiry(),
            device_info=device_info or "Unknown",
            ip_address=ip_address or "Unknown",
        )

    def rotate_session(
        self,
        session_id: str,
        new_token_id: str,
        *,
        expected_token_id: Optional[str] = None,
    ) -> Optional[Session]:
        """Swap in a new refresh identifier and push the expiry forward.

        With ``expected_token_id`` the swap only happens if the session still
        holds that identifier; ``None`` means another rotation got there first.
        """
        rotated = self.store.rotate_session(
            session_id,
            new_token_id,
            self.tokens.refresh_expiry(),
            expected_refresh_token=expected_token_id,
        )
        if rotated is None:
            logger.info("session_rotation_lost", session_id=session_id)
        return rotated

    def find_session_by_token_id(self, user_id: str, token_id: str) -> Optional[Session]:
        sess = self.store.find_session(user_id, token_id)
        if sess is None or sess.is_expired(utcnow()):
            return None
        return sess

    def revoke_all_sessions(self, user_id: str) -> int:
        removed = self.store.delete_user_sessions(user_id)
        logger.info("sessions_revoked", user_id=user_id, count=removed)
        return removed

    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_sessions(utcnow())
        if removed:
            logger.info("expired_sessions_swept", count=removed)
        return removed
