from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional

from kleroteria.logging import get_logger
from kleroteria.storage.models import Session, User, utcnow

if TYPE_CHECKING:
    from kleroteria.service.auth import AuthStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Resolved identity for one authenticated request."""

    user: User
    session_id: str
    expires_at: datetime

    @property
    def user_id(self) -> str:
        return self.user.id


class SessionManager:
    """Issue, resolve and revoke server-side bearer sessions.

    Expiry is absolute: a session is valid strictly before ``expires_at`` and
    is never extended or resurrected.
    """

    def __init__(
        self, store: "AuthStore", *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def create(
        self,
        user_id: str,
        ttl: timedelta,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        session = Session.new(
            user_id, ttl, ip_addr=ip_addr, user_agent=user_agent, now=self._now()
        )
        self.store.insert_session(session)
        self.logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            ttl_seconds=int(ttl.total_seconds()),
        )
        return session

    def resolve(self, token: Optional[str]) -> Optional[AuthContext]:
        if not token:
            return None
        session = self.store.get_session_by_token(token)
        if not session:
            return None
        if session.is_expired(self._now()):
            self.logger.info("session_expired", session_id=session.id)
            return None
        user = self.store.get_user(session.user_id)
        if not user:
            self.logger.warning(
                "session_user_missing", session_id=session.id, user_id=session.user_id
            )
            return None
        return AuthContext(
            user=user, session_id=session.id, expires_at=session.expires_at
        )

    def revoke(self, token: Optional[str]) -> None:
        if not token:
            return
        if self.store.delete_session_by_token(token):
            self.logger.info("session_revoked")

    def prune_expired(self, user_id: str) -> int:
        removed = self.store.delete_expired_sessions(user_id, self._now())
        if removed:
            self.logger.info("expired_sessions_pruned", user_id=user_id, count=removed)
        return removed
