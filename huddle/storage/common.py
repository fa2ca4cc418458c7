"""Shared storage contract and helpers for the memory and postgres backends.

Every method on :class:`CredentialStore` is a single-record atomic operation.
Flows that must not double-apply (token consumption, session rotation) are
expressed as one conditional update so two concurrent callers can never both
observe success.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol

from huddle.storage.models import Session, User


def normalize_email(email: str) -> str:
    return email.strip().lower()


class CredentialStore(Protocol):
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
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def set_email_verification_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> None: ...

    def consume_email_verification_token(
        self, token: str, now: datetime
    ) -> Optional[User]: ...

    def set_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> None: ...

    def consume_password_reset_token(
        self, token: str, password_hash: str, now: datetime
    ) -> Optional[User]: ...

    def set_two_factor_material(
        self, user_id: str, secret: str, backup_codes: List[str]
    ) -> None: ...

    def enable_two_factor(self, user_id: str) -> None: ...

    def record_login(self, user_id: str, at: datetime) -> None: ...

    def create_session(
        self,
        user_id: str,
        refresh_token: str,
        expires_at: datetime,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session: ...

    def find_session(self, user_id: str, refresh_token: str) -> Optional[Session]: ...

    def rotate_session(
        self,
        session_id: str,
        refresh_token: str,
        expires_at: datetime,
        *,
        expected_refresh_token: Optional[str] = None,
    ) -> Optional[Session]: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


__all__ = ["CredentialStore", "normalize_email"]
