from __future__ import annotations

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from examrevise.logging import get_logger

logger = get_logger(__name__)

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")


class PasswordVerifier:
    """Adaptive password hashing: argon2id for new hashes, bcrypt for legacy rows."""

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, stored_hash: str | None) -> bool:
        """Return True only when ``password`` matches ``stored_hash``.

        Never raises: unknown formats and corrupted hashes yield False.
        """
        if not password or not stored_hash:
            return False
        try:
            if stored_hash.startswith("$argon2"):
                return self._hasher.verify(stored_hash, password)
            if stored_hash.startswith(_BCRYPT_PREFIXES):
                return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError, ValueError, TypeError) as exc:
            logger.warning("password_hash_unusable", error_type=type(exc).__name__)
            return False
        logger.warning("password_hash_format_unsupported")
        return False

    def needs_rehash(self, stored_hash: str) -> bool:
        if stored_hash.startswith(_BCRYPT_PREFIXES):
            return True
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True


__all__ = ["PasswordVerifier"]
