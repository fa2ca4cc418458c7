from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from io import BytesIO
from typing import List, Optional
from urllib.parse import quote, urlencode

import qrcode

from huddle.logging import get_logger
from huddle.service.errors import ConflictError, NotFoundError, ValidationError
from huddle.storage.common import CredentialStore

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
BACKUP_CODE_COUNT = 8


def generate_secret() -> str:
    """Random 160-bit secret, base32 without padding."""
    return base64.b32encode(secrets.token_bytes(20)).decode("ascii").rstrip("=")


def generate_totp(
    secret: str, timestamp: float, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``timestamp`` (HMAC-SHA1, as authenticator apps expect)."""
    cleaned = secret.replace(" ", "").upper()
    padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (10**digits)
    return str(code_int).zfill(digits)


def verify_totp(
    secret: str,
    code: str,
    timestamp: Optional[float] = None,
    *,
    window: int = 1,
    interval: int = TOTP_INTERVAL,
) -> bool:
    """Accept the current step and ``window`` steps either side of it."""
    if not code or not (code.isascii() and code.isdigit()):
        return False
    now = time.time() if timestamp is None else timestamp
    for step in range(-window, window + 1):
        generated = generate_totp(secret, now + step * interval, interval=interval)
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


def provisioning_uri(secret: str, account_label: str, issuer: str) -> str:
    label = quote(f"{issuer}:{account_label}")
    query = urlencode({"secret": secret, "issuer": issuer}, quote_via=quote)
    return f"otpauth://totp/{label}?{query}"


def render_qr_data_url(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=5)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffered = BytesIO()
    img.save(buffered, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffered.getvalue()).decode()


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> List[str]:
    return [secrets.token_hex(4) for _ in range(count)]


@dataclass(frozen=True)
class TwoFactorSetup:
    secret: str
    otpauth_uri: str
    qr_code: str
    backup_codes: List[str]


class TwoFactorManager:
    """Two-phase TOTP enrollment: stash material, then confirm with a code."""

    def __init__(self, store: CredentialStore, *, issuer: str = "Huddle") -> None:
        self.store = store
        self.issuer = issuer

    def begin_setup(self, user_id: str, account_label: str) -> TwoFactorSetup:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.two_factor_enabled:
            raise ConflictError("two-factor authentication is already enabled")
        secret = generate_secret()
        uri = provisioning_uri(secret, account_label, self.issuer)
        backup_codes = generate_backup_codes()
        self.store.set_two_factor_material(user_id, secret, backup_codes)
        logger.info("two_factor_setup_started", user_id=user_id)
        return TwoFactorSetup(
            secret=secret,
            otpauth_uri=uri,
            qr_code=render_qr_data_url(uri),
            backup_codes=backup_codes,
        )

    def confirm_setup(self, user_id: str, code: str) -> bool:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if not user.two_factor_secret:
            raise ValidationError("two-factor setup has not been started")
        if not verify_totp(user.two_factor_secret, code):
            logger.info("two_factor_code_rejected", user_id=user_id)
            return False
        self.store.enable_two_factor(user_id)
        logger.info("two_factor_enabled", user_id=user_id)
        return True
