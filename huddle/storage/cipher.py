from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from huddle.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Fernet wrapper used to keep TOTP secrets encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("Unable to initialize MFA cipher without key material")
        self._fernet = Fernet(self._derive_key(key_material))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str | None) -> str | None:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: str | None) -> str | None:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Rows written before the key rotated cannot be read back
            logger.warning("mfa_secret_decrypt_failed")
            return None
