from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from huddle.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """argon2id password hashing with a per-deployment work factor.

    Salts are generated per call by argon2-cffi and embedded in the encoded
    hash, so two hashes of the same password never compare equal.
    """

    def __init__(self, *, time_cost: int = 3) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID, time_cost=time_cost)
        self._dummy_hash = self._hasher.hash("huddle-timing-parity")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: str) -> bool:
        try:
            return self._hasher.verify(hashed, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def burn(self, plaintext: str) -> None:
        """Spend one verification's worth of work on a known-bad hash."""
        self.verify(plaintext, self._dummy_hash)
