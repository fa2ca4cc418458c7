from __future__ import annotations

import base64
import hashlib
import hmac
import json
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Tuple

from huddle.config import Settings
from huddle.logging import get_logger
from huddle.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_EXPIRY_SECONDS = 900

_DURATION_RE = re.compile(r"([0-9]+)([smhd])")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(duration: str | None) -> int:
    """Convert ``"<int><s|m|h|d>"`` to seconds.

    Anything that does not match, including an empty or missing value,
    yields the 15 minute default rather than an error.
    """
    if not duration:
        return DEFAULT_EXPIRY_SECONDS
    match = _DURATION_RE.fullmatch(duration)
    if not match:
        return DEFAULT_EXPIRY_SECONDS
    value, unit = match.groups()
    return int(value) * _UNIT_SECONDS[unit]


def compute_expiry(duration: str | None, now: datetime | None = None) -> datetime:
    return (now or utcnow()) + timedelta(seconds=parse_duration(duration))


def new_token_id() -> str:
    """168 bits of url-safe randomness used as the refresh token identifier."""
    return secrets.token_urlsafe(21)


@dataclass(frozen=True)
class AccessTokenPayload:
    user_id: str
    email: str
    username: str
    issued_at: int
    expires_at: int


@dataclass(frozen=True)
class RefreshTokenPayload:
    user_id: str
    token_id: str
    issued_at: int
    expires_at: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenService:
    """Mints and verifies HS256 access and refresh JWTs.

    Verification failures of any kind (bad signature, wrong algorithm,
    wrong issuer or audience, expiry, wrong token type, malformed input)
    collapse to ``None`` so callers cannot leak which check failed.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._key = settings.jwt_secret.encode()

    @property
    def access_ttl_seconds(self) -> int:
        return parse_duration(self.settings.access_token_expires_in)

    @property
    def refresh_ttl_seconds(self) -> int:
        return parse_duration(self.settings.refresh_token_expires_in)

    def refresh_expiry(self, now: datetime | None = None) -> datetime:
        return compute_expiry(self.settings.refresh_token_expires_in, now)

    def issue_access_token(self, user_id: str, email: str, username: str) -> str:
        now = int(time.time())
        return self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user_id,
                "user_id": user_id,
                "email": email,
                "username": username,
                "token_type": "access",
                "iat": now,
                "exp": now + self.access_ttl_seconds,
            }
        )

    def issue_refresh_token(self, user_id: str) -> Tuple[str, str]:
        now = int(time.time())
        token_id = new_token_id()
        token = self._encode_jwt(
            {
                "iss": self.settings.jwt_issuer,
                "aud": self.settings.jwt_audience,
                "sub": user_id,
                "user_id": user_id,
                "token_id": token_id,
                "token_type": "refresh",
                "iat": now,
                "exp": now + self.refresh_ttl_seconds,
            }
        )
        return token, token_id

    def verify_access_token(self, token: str) -> Optional[AccessTokenPayload]:
        payload = self._decode_jwt(token, expected_type="access")
        if not payload:
            return None
        user_id = payload.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            return None
        return AccessTokenPayload(
            user_id=user_id,
            email=str(payload.get("email", "")),
            username=str(payload.get("username", "")),
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )

    def verify_refresh_token(self, token: str) -> Optional[RefreshTokenPayload]:
        payload = self._decode_jwt(token, expected_type="refresh")
        if not payload:
            return None
        user_id = payload.get("user_id")
        token_id = payload.get("token_id")
        if not isinstance(user_id, str) or not isinstance(token_id, str):
            return None
        if not user_id or not token_id:
            return None
        return RefreshTokenPayload(
            user_id=user_id,
            token_id=token_id,
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
        )

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str, *, expected_type: str) -> Optional[dict[str, Any]]:
        if not token or not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not sig_b64.isascii():
            return None
        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        if payload.get("token_type") != expected_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload
