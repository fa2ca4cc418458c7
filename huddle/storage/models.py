from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: str
    discriminator: str
    password_hash: str
    date_of_birth: Optional[str] = None
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires_at: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires_at: Optional[datetime] = None
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    two_factor_backup_codes: List[str] = field(default_factory=list)
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_public(self) -> Dict[str, Any]:
        """Profile fields safe to hand to the account owner."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "discriminator": self.discriminator,
            "email_verified": self.email_verified,
            "two_factor_enabled": self.two_factor_enabled,
            "date_of_birth": self.date_of_birth,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Session:
    """A live refresh-token grant.

    ``refresh_token`` holds the refresh token's identifier claim, never the
    signed token itself.
    """

    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    device_info: str = "Unknown"
    ip_address: str = "Unknown"
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        expires_at: datetime,
        device_info: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=expires_at,
            device_info=device_info or "Unknown",
            ip_address=ip_address or "Unknown",
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.expires_at <= (now or utcnow())
