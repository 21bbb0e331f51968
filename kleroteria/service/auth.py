from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from kleroteria.config import Settings
from kleroteria.logging import get_logger
from kleroteria.service.errors import (
    AuthenticationError,
    ConflictError,
    HashingFailed,
    RejectedError,
    SendError,
    ServerError,
    ValidationError,
)
from kleroteria.service.notifications import NotificationSender
from kleroteria.service.passwords import CredentialVerifier
from kleroteria.service.results import Err, Ok, Result
from kleroteria.service.sessions import AuthContext, SessionManager
from kleroteria.service.verification import VerificationTokenManager
from kleroteria.storage.common import normalize_email
from kleroteria.storage.errors import ConstraintViolation, StoreError
from kleroteria.storage.models import (
    VERIFIED_FLAG_FOR_PURPOSE,
    PublicToken,
    PublicUser,
    Session,
    TokenPurpose,
    User,
    UserRole,
    VerificationToken,
    utcnow,
)

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CODE_PATTERN = re.compile(r"^[A-Za-z0-9]{6}$")

# Shared by every credential failure so responses never reveal which check failed
INVALID_CREDENTIALS = "Invalid email or password"
UNAUTHORIZED = "Unauthorized"
INTERNAL = "Internal Server Error"


def _is_encodable(value: str) -> bool:
    """Lone surrogates and similar cannot reach the hasher as UTF-8."""
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


class AuthStore(Protocol):
    # identity
    def create_user(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        phone: str,
        password_hash: str,
        role: UserRole = UserRole.FREE,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_phone(self, phone: str) -> Optional[User]: ...

    def set_user_verified(
        self, user_id: str, field_name: str, value: bool
    ) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    # sessions
    def insert_session(self, session: Session) -> Session: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def delete_session_by_token(self, token: str) -> bool: ...

    def delete_expired_sessions(self, user_id: str, now: datetime) -> int: ...

    def list_user_sessions(self, user_id: str) -> List[Session]: ...

    # verification tokens
    def get_active_verification_token(
        self, user_id: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]: ...

    def issue_verification_token(
        self,
        user_id: str,
        purpose: TokenPurpose,
        *,
        code_factory: Callable[[], str],
        expires_at: datetime,
        now: datetime,
        reuse_active: bool = True,
        max_attempts: int = 5,
    ) -> Tuple[VerificationToken, bool]: ...

    def consume_verification_token(
        self, user_id: str, purpose: TokenPurpose, code: str, now: datetime
    ) -> Optional[VerificationToken]: ...

    def list_verification_tokens(
        self, user_id: str, purpose: TokenPurpose
    ) -> List[VerificationToken]: ...


@dataclass(frozen=True)
class AuthResult:
    """A freshly minted session for the signed-in user."""

    user: PublicUser
    session_token: str
    expires_at: datetime
    ttl_seconds: int


class AuthService:
    """Sign-up, sign-in, session lookup and contact verification.

    Every public operation returns ``Ok`` or ``Err``; store, hashing and
    delivery failures are logged and reported as ``ServerError``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        notifier: NotificationSender,
        verifier: Optional[CredentialVerifier] = None,
        sessions: Optional[SessionManager] = None,
        tokens: Optional[VerificationTokenManager] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.notifier = notifier
        self.verifier = verifier or CredentialVerifier(settings)
        self.sessions = sessions or SessionManager(store, clock=clock)
        self.tokens = tokens or VerificationTokenManager.from_settings(
            store, settings, clock=clock
        )
        self.logger = logger

    @property
    def long_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.session_ttl_minutes_long)

    @property
    def short_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.session_ttl_minutes_short)

    def _internal(self, event: str, exc: Exception, **fields) -> Err:
        self.logger.error(event, error_type=type(exc).__name__, error=str(exc), **fields)
        return Err(ServerError(INTERNAL))

    def _mint(
        self,
        user: User,
        ttl: timedelta,
        *,
        ip_addr: Optional[str],
        user_agent: Optional[str],
    ) -> AuthResult:
        session = self.sessions.create(
            user.id, ttl, ip_addr=ip_addr, user_agent=user_agent
        )
        return AuthResult(
            user=user.public(),
            session_token=session.token,
            expires_at=session.expires_at,
            ttl_seconds=int(ttl.total_seconds()),
        )

    async def sign_up(
        self,
        first_name: str,
        last_name: str,
        email: str,
        phone: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[AuthResult]:
        first_name = (first_name or "").strip()
        last_name = (last_name or "").strip()
        email = normalize_email(email)
        phone = (phone or "").strip()
        if not all([first_name, last_name, email, phone, password]):
            return Err(ValidationError("All fields are required"))
        if not EMAIL_PATTERN.match(email):
            return Err(ValidationError("Invalid email format", detail={"field": "email"}))
        if len(password) < self.settings.password_min_length:
            return Err(
                ValidationError(
                    f"Password must be at least {self.settings.password_min_length} characters long",
                    detail={"field": "password"},
                )
            )
        if not _is_encodable(password):
            return Err(ValidationError("Invalid password", detail={"field": "password"}))

        try:
            if self.store.get_user_by_email(email) or self.store.get_user_by_phone(phone):
                return Err(ConflictError("User already exists"))
            password_hash = await self.verifier.hash_async(password)
            user = self.store.create_user(
                first_name=first_name,
                last_name=last_name,
                email=email,
                phone=phone,
                password_hash=password_hash,
            )
        except ConstraintViolation as exc:
            # lost a race with a concurrent sign-up for the same email or phone
            self.logger.info("signup_conflict", field=exc.detail.get("field"))
            return Err(ConflictError("User already exists"))
        except HashingFailed as exc:
            return self._internal("signup_hash_failed", exc)
        except StoreError as exc:
            return self._internal("signup_store_failed", exc)

        try:
            result = self._mint(
                user, self.long_ttl, ip_addr=ip_addr, user_agent=user_agent
            )
        except StoreError as exc:
            return self._internal("signup_session_failed", exc, user_id=user.id)
        self.logger.info("user_signed_up", user_id=user.id)
        return Ok(result)

    async def sign_in(
        self,
        email: str,
        password: str,
        remember_me: bool = False,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Result[AuthResult]:
        email = normalize_email(email)
        if not email or not password:
            return Err(ValidationError("Email and password are required"))
        if not _is_encodable(password):
            return Err(ValidationError("Invalid password", detail={"field": "password"}))

        try:
            user = self.store.get_user_by_email(email)
            if user is None:
                await self.verifier.dummy_verify_async(password)
                self.logger.info("signin_failed")
                return Err(AuthenticationError(INVALID_CREDENTIALS))
            if not await self.verifier.verify_async(password, user.password_hash):
                self.logger.info("signin_failed")
                return Err(AuthenticationError(INVALID_CREDENTIALS))
            self.sessions.prune_expired(user.id)
            ttl = self.long_ttl if remember_me else self.short_ttl
            result = self._mint(user, ttl, ip_addr=ip_addr, user_agent=user_agent)
        except HashingFailed as exc:
            return self._internal("signin_hash_failed", exc)
        except StoreError as exc:
            return self._internal("signin_store_failed", exc)
        self.logger.info("user_signed_in", user_id=user.id, remember_me=remember_me)
        return Ok(result)

    async def sign_out(self, session_token: Optional[str]) -> Result[None]:
        try:
            self.sessions.revoke(session_token)
        except StoreError as exc:
            # sign-out always succeeds for the caller; the session expires on its own
            self.logger.warning("signout_store_failed", error=str(exc))
        return Ok(None)

    def authenticate(self, session_token: Optional[str]) -> Result[AuthContext]:
        """Resolve a bearer token into an ``AuthContext``."""
        try:
            ctx = self.sessions.resolve(session_token)
        except StoreError as exc:
            return self._internal("session_resolve_failed", exc)
        if ctx is None:
            return Err(AuthenticationError(UNAUTHORIZED))
        return Ok(ctx)

    async def get_current_user(self, session_token: Optional[str]) -> Result[PublicUser]:
        auth = self.authenticate(session_token)
        if not auth.ok:
            return auth
        return Ok(auth.value.user.public())

    async def _deliver(
        self, session_token: Optional[str], purpose: TokenPurpose, *, resent: bool
    ) -> Result[PublicToken]:
        auth = self.authenticate(session_token)
        if not auth.ok:
            return auth
        ctx: AuthContext = auth.value
        try:
            token, created = self.tokens.obtain(
                ctx.user_id, purpose, reuse_active=not resent
            )
        except StoreError as exc:
            return self._internal(
                "verification_issue_failed", exc, user_id=ctx.user_id, purpose=purpose.value
            )

        # a reused code was already delivered when it was minted
        if created:
            address = ctx.user.email if purpose == TokenPurpose.EMAIL else ctx.user.phone
            try:
                await self.notifier.send(
                    purpose,
                    address,
                    token.code,
                    first_name=ctx.user.first_name,
                    resent=resent,
                )
            except SendError as exc:
                # the issued code stays valid; the caller can resend
                return self._internal(
                    "verification_send_failed",
                    exc,
                    user_id=ctx.user_id,
                    purpose=purpose.value,
                    verification_id=token.id,
                )
        return Ok(token.public())

    async def _verify(
        self, session_token: Optional[str], purpose: TokenPurpose, code: Optional[str]
    ) -> Result[None]:
        if not code or not CODE_PATTERN.match(code):
            return Err(ValidationError("Code must be 6 letters or digits", detail={"field": "code"}))
        auth = self.authenticate(session_token)
        if not auth.ok:
            return auth
        ctx: AuthContext = auth.value
        try:
            if not self.tokens.verify(ctx.user_id, purpose, code):
                return Err(RejectedError("Invalid or expired code"))
            self.store.set_user_verified(
                ctx.user_id, VERIFIED_FLAG_FOR_PURPOSE[purpose], True
            )
        except StoreError as exc:
            return self._internal(
                "verification_consume_failed", exc, user_id=ctx.user_id, purpose=purpose.value
            )
        self.logger.info(
            "contact_verified", user_id=ctx.user_id, purpose=purpose.value
        )
        return Ok(None)

    async def send_email_verification(
        self, session_token: Optional[str]
    ) -> Result[PublicToken]:
        return await self._deliver(session_token, TokenPurpose.EMAIL, resent=False)

    async def resend_email_verification(
        self, session_token: Optional[str]
    ) -> Result[PublicToken]:
        return await self._deliver(session_token, TokenPurpose.EMAIL, resent=True)

    async def verify_email_code(
        self, session_token: Optional[str], code: Optional[str]
    ) -> Result[None]:
        return await self._verify(session_token, TokenPurpose.EMAIL, code)

    async def send_phone_verification(
        self, session_token: Optional[str]
    ) -> Result[PublicToken]:
        return await self._deliver(session_token, TokenPurpose.PHONE, resent=False)

    async def resend_phone_verification(
        self, session_token: Optional[str]
    ) -> Result[PublicToken]:
        return await self._deliver(session_token, TokenPurpose.PHONE, resent=True)

    async def verify_phone_code(
        self, session_token: Optional[str], code: Optional[str]
    ) -> Result[None]:
        return await self._verify(session_token, TokenPurpose.PHONE, code)


__all__ = ["AuthStore", "AuthContext", "AuthResult", "AuthService"]
