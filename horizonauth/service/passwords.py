from __future__ import annotations

from typing import Callable, Optional, Tuple

import bcrypt
from argon2 import PasswordHasher as Argon2Hasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from horizonauth.logging import get_logger

logger = get_logger(__name__)

# 64 MiB, 3 passes, 4 lanes
ARGON2_MEMORY_COST_KIB = 64 * 1024
ARGON2_TIME_COST = 3
ARGON2_PARALLELISM = 4

_ARGON2_PREFIXES = ("$argon2id$", "$argon2i$", "$argon2d$")
_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")

LegacyVerifier = Callable[[str, str], bool]


class LegacyHashVerifierMissing(NotImplementedError):
    """A legacy hash was presented but no legacy verifier is configured."""


def bcrypt_verify(plaintext: str, hashed: str) -> bool:
    """Legacy verifier for ``$2a$``/``$2b$``/``$2y$`` hashes."""
    try:
        return bcrypt.checkpw(plaintext.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


class PasswordHasher:
    """Argon2id password hashing with an opt-in legacy migration path.

    ``verify`` never raises on malformed input. ``verify_and_upgrade`` is the
    login path: it verifies and hands back a fresh Argon2id hash whenever the
    stored one is legacy or uses outdated parameters.
    """

    def __init__(self, legacy_verifier: Optional[LegacyVerifier] = None) -> None:
        self._hasher = Argon2Hasher(
            time_cost=ARGON2_TIME_COST,
            memory_cost=ARGON2_MEMORY_COST_KIB,
            parallelism=ARGON2_PARALLELISM,
            type=Type.ID,
        )
        self._legacy_verifier = legacy_verifier
        self._dummy_hash: Optional[str] = None

    @staticmethod
    def is_legacy_hash(hashed: str) -> bool:
        return bool(hashed) and hashed.startswith(_BCRYPT_PREFIXES)

    @staticmethod
    def is_current_hash(hashed: str) -> bool:
        return bool(hashed) and hashed.startswith(_ARGON2_PREFIXES)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, hashed: Optional[str]) -> bool:
        if not hashed:
            return False
        if self.is_legacy_hash(hashed):
            if self._legacy_verifier is None:
                logger.warning("legacy_password_hash_without_verifier")
                return False
            return self._legacy_verifier(plaintext, hashed)
        try:
            return self._hasher.verify(hashed, plaintext)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def needs_rehash(self, hashed: str) -> bool:
        if not self.is_current_hash(hashed):
            return True
        try:
            return self._hasher.check_needs_rehash(hashed)
        except InvalidHash:
            return True

    def verify_and_upgrade(
        self, plaintext: str, hashed: Optional[str]
    ) -> Tuple[bool, Optional[str]]:
        """Return ``(valid, new_hash)``; ``new_hash`` is set only when a rehash is due.

        Raises ``LegacyHashVerifierMissing`` for a legacy hash when no legacy
        verifier was wired in.
        """
        if not hashed:
            return False, None
        if self.is_legacy_hash(hashed):
            if self._legacy_verifier is None:
                raise LegacyHashVerifierMissing(
                    "legacy password hash found but no legacy verifier is configured"
                )
            if not self._legacy_verifier(plaintext, hashed):
                return False, None
            logger.info("legacy_password_hash_upgraded")
            return True, self.hash(plaintext)
        if not self.verify(plaintext, hashed):
            return False, None
        return True, self.hash(plaintext) if self.needs_rehash(hashed) else None

    def dummy_verify(self, plaintext: str) -> None:
        """Spend the cost of one verification so unknown users are not faster."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash("dummy-password-for-timing")
        self.verify(plaintext, self._dummy_hash)
