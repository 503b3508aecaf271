from __future__ import annotations

from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

ARGON2_ALGO = "argon2id"


class PasswordVerifier(Protocol):
    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        ...


class Argon2PasswordVerifier:
    """argon2id hashing and verification.

    A dummy hash is computed once so that lookups for unknown accounts
    spend the same verification time as lookups for known ones.
    """

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> Tuple[str, str]:
        digest = self._pwd_hasher.hash(password)
        return digest, ARGON2_ALGO

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            self.burn(password)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    @property
    def dummy_hash(self) -> str:
        if self._dummy_hash is None:
            self._dummy_hash = self._pwd_hasher.hash("latchkey-timing-placeholder")
        return self._dummy_hash

    def burn(self, password: str) -> None:
        """Verify against the dummy hash and discard the outcome."""
        self.verify(password, self.dummy_hash)


__all__ = ["ARGON2_ALGO", "PasswordVerifier", "Argon2PasswordVerifier"]
