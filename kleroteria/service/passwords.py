from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHashError, VerificationError

from kleroteria.config import Settings
from kleroteria.logging import get_logger
from kleroteria.service.errors import HashingFailed

logger = get_logger(__name__)

# compared against when the account does not exist, so both paths pay for a verify
_DUMMY_PASSWORD = "kleroteria-dummy-password"


class CredentialVerifier:
    """Argon2id password hashing with cost parameters taken from settings."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        if settings is None:
            self._hasher = PasswordHasher(type=Type.ID)
        else:
            self._hasher = PasswordHasher(
                time_cost=settings.argon2_time_cost,
                memory_cost=settings.argon2_memory_cost,
                parallelism=settings.argon2_parallelism,
                type=Type.ID,
            )
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def hash(self, plaintext: str) -> str:
        try:
            return self._hasher.hash(plaintext)
        except (HashingError, UnicodeError) as exc:
            self.logger.error("password_hash_failed", error=str(exc))
            raise HashingFailed("password hashing failed") from exc

    def verify(self, plaintext: str, password_hash: str) -> bool:
        """Return True only for a matching hash; malformed hashes are a mismatch."""
        if not password_hash:
            return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except (InvalidHashError, UnicodeError):
            # non-ASCII hashes and unencodable passwords never match
            self.logger.warning("password_hash_malformed")
            return False
        except VerificationError:
            return False

    def dummy_verify(self, plaintext: str) -> bool:
        """Burn one verification against a throwaway hash; always False."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(_DUMMY_PASSWORD)
        self.verify(plaintext, self._dummy_hash)
        return False

    async def hash_async(self, plaintext: str) -> str:
        return await asyncio.to_thread(self.hash, plaintext)

    async def verify_async(self, plaintext: str, password_hash: str) -> bool:
        return await asyncio.to_thread(self.verify, plaintext, password_hash)

    async def dummy_verify_async(self, plaintext: str) -> bool:
        return await asyncio.to_thread(self.dummy_verify, plaintext)
