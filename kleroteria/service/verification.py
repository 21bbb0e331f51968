from __future__ import annotations

import secrets
import string
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, List, Tuple

from kleroteria.logging import get_logger
from kleroteria.storage.common import normalize_code
from kleroteria.storage.models import TokenPurpose, VerificationToken, utcnow

if TYPE_CHECKING:
    from kleroteria.config import Settings
    from kleroteria.service.auth import AuthStore

logger = get_logger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 6


def generate_code(length: int = CODE_LENGTH) -> str:
    """Uniform random code over ``[A-Z0-9]`` from the OS CSPRNG."""
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


class VerificationTokenManager:
    """One-time verification codes with at most one live code per user and purpose.

    Per ``(user_id, purpose)`` a code moves from PENDING to EXPIRED when it is
    used, superseded by a newer code, or passes ``expires_at``. Each
    transition runs as a single atomic store primitive.
    """

    def __init__(
        self,
        store: "AuthStore",
        *,
        ttl: timedelta = timedelta(minutes=10),
        max_attempts: int = 5,
        code_factory: Callable[[], str] = generate_code,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self.max_attempts = max_attempts
        self._code_factory = code_factory
        self._clock = clock
        self.logger = logger

    @classmethod
    def from_settings(
        cls,
        store: "AuthStore",
        settings: "Settings",
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> "VerificationTokenManager":
        return cls(
            store,
            ttl=timedelta(minutes=settings.verification_code_ttl_minutes),
            max_attempts=settings.verification_code_max_attempts,
            clock=clock,
        )

    def obtain(
        self, user_id: str, purpose: TokenPurpose, *, reuse_active: bool
    ) -> Tuple[VerificationToken, bool]:
        """Issue or reuse a code; returns ``(token, created)``."""
        now = self._clock()
        token, created = self.store.issue_verification_token(
            user_id,
            purpose,
            code_factory=self._code_factory,
            expires_at=now + self.ttl,
            now=now,
            reuse_active=reuse_active,
            max_attempts=self.max_attempts,
        )
        self.logger.info(
            "verification_token_issued" if created else "verification_token_reused",
            user_id=user_id,
            purpose=token.purpose.value,
            verification_id=token.id,
        )
        return token, created

    def issue(self, user_id: str, purpose: TokenPurpose) -> VerificationToken:
        """Return the active code for the key unchanged, or mint a fresh one."""
        return self.obtain(user_id, purpose, reuse_active=True)[0]

    def resend(self, user_id: str, purpose: TokenPurpose) -> VerificationToken:
        """Always supersede any pending code and mint a fresh one."""
        return self.obtain(user_id, purpose, reuse_active=False)[0]

    def verify(self, user_id: str, purpose: TokenPurpose, code: str) -> bool:
        token = self.store.consume_verification_token(
            user_id, purpose, normalize_code(code), self._clock()
        )
        if token is None:
            self.logger.info(
                "verification_code_rejected", user_id=user_id, purpose=TokenPurpose(purpose).value
            )
            return False
        self.logger.info(
            "verification_code_accepted",
            user_id=user_id,
            purpose=token.purpose.value,
            verification_id=token.id,
        )
        return True

    def history(self, user_id: str, purpose: TokenPurpose) -> List[VerificationToken]:
        return self.store.list_verification_tokens(user_id, purpose)
