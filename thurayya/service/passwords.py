from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from thurayya.logging import get_logger

logger = get_logger(__name__)

# Verified against when no real hash exists so every login pays the same cost
_DUMMY_SECRET = "thurayya-dummy-password-for-timing"


class PasswordService:
    """Adaptive one-way hashing (argon2id) with a fixed-cost miss path."""

    algorithm = "argon2id"

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash = self._pwd_hasher.hash(_DUMMY_SECRET)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password: str, stored_hash: Optional[str]) -> bool:
        """Check ``password`` against ``stored_hash``.

        An empty or unparsable hash still runs one full verification against a
        dummy digest before returning False.
        """
        if not stored_hash:
            self._burn_verification(password)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unusable")
            self._burn_verification(password)
            return False

    def dummy_verify(self, password: str) -> None:
        """Spend one verification's worth of work for an unknown account."""
        self._burn_verification(password)

    def _burn_verification(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password or "")
        except VerifyMismatchError:
            pass
