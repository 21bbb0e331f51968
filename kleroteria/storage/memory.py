from __future__ import annotations

import json
import os
import tempfile
import threading
import weakref
from contextlib import contextmanager, suppress
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from kleroteria.logging import get_logger
from kleroteria.storage.common import (
    coerce_purpose,
    coerce_role,
    coerce_status,
    ensure_aware,
    issuance_key,
    normalize_code,
    normalize_email,
    validate_verified_field,
)
from kleroteria.storage.errors import ConstraintViolation, StoreError
from kleroteria.storage.models import (
    Session,
    TokenPurpose,
    TokenStatus,
    User,
    UserRole,
    VerificationToken,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for users, sessions and verification tokens.

    All data access goes through ``_data_lock``. Token issuance and
    consumption are additionally serialized per ``(user_id, purpose)`` so
    that lookup, supersede and insert form one atomic unit for a key while
    operations on other keys proceed independently. When ``state_dir`` is
    given, a JSON snapshot is written after every mutation and reloaded on
    start; a mutation whose snapshot fails is undone.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.tokens: Dict[str, VerificationToken] = {}
        # code -> token id, mirrors the unique constraint on tokens.code
        self._codes: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        # dropped once no caller holds them
        self._issuance_locks: "weakref.WeakValueDictionary[str, Any]" = (
            weakref.WeakValueDictionary()
        )
        self._issuance_locks_guard = threading.Lock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _issuance_lock(self, user_id: str, purpose: TokenPurpose):
        key = issuance_key(user_id, purpose)
        with self._issuance_locks_guard:
            lock = self._issuance_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._issuance_locks[key] = lock
            return lock

    # users
    def create_user(
        self,
        *,
        first_name: str,
        last_name: str,
        email: str,
        phone: str,
        password_hash: str,
        role: UserRole = UserRole.FREE,
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(existing.phone == phone for existing in self.users.values()):
                raise ConstraintViolation("phone already exists", {"field": "phone"})
            now = utcnow()
            user = User(
                id=new_id(),
                first_name=first_name,
                last_name=last_name,
                email=email,
                phone=phone,
                password_hash=password_hash,
                email_verified=False,
                phone_verified=False,
                role=coerce_role(role),
                created_at=now,
                updated_at=now,
            )
            with self._persisted():
                self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.phone == phone), None)
            return replace(user) if user else None

    def set_user_verified(
        self, user_id: str, field_name: str, value: bool
    ) -> Optional[User]:
        validate_verified_field(field_name)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            with self._persisted():
                setattr(user, field_name, bool(value))
                user.updated_at = utcnow()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            with self._persisted():
                self.users.pop(user_id, None)
                for sess_id, sess in list(self.sessions.items()):
                    if sess.user_id == user_id:
                        self.sessions.pop(sess_id, None)
                for token_id, token in list(self.tokens.items()):
                    if token.user_id == user_id:
                        self.tokens.pop(token_id, None)
                        self._codes.pop(token.code, None)
            return True

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            if any(s.token == session.token for s in self.sessions.values()):
                raise ConstraintViolation("session token already exists", {"field": "token"})
            with self._persisted():
                self.sessions[session.id] = replace(session)
            return session

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            sess = next((s for s in self.sessions.values() if s.token == token), None)
            return replace(sess) if sess else None

    def delete_session_by_token(self, token: str) -> bool:
        with self._data_lock:
            sess_id = next(
                (sid for sid, s in self.sessions.items() if s.token == token), None
            )
            if sess_id is None:
                return False
            with self._persisted():
                self.sessions.pop(sess_id, None)
            return True

    def delete_expired_sessions(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sess.expires_at <= now
            ]
            if stale:
                with self._persisted():
                    for sid in stale:
                        self.sessions.pop(sid, None)
            return len(stale)

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._data_lock:
            results = [replace(s) for s in self.sessions.values() if s.user_id == user_id]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    # verification tokens
    def _pending_for_key(
        self, user_id: str, purpose: TokenPurpose
    ) -> List[VerificationToken]:
        return [
            t
            for t in self.tokens.values()
            if t.user_id == user_id
            and t.purpose == purpose
            and t.status == TokenStatus.PENDING
        ]

    def _find_active(
        self, user_id: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]:
        active = [t for t in self._pending_for_key(user_id, purpose) if t.expires_at > now]
        if not active:
            return None
        return max(active, key=lambda t: t.created_at)

    def get_active_verification_token(
        self, user_id: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]:
        purpose = coerce_purpose(purpose)
        with self._data_lock:
            token = self._find_active(user_id, purpose, now)
            return replace(token) if token else None

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
    ) -> Tuple[VerificationToken, bool]:
        """Return the active token for the key, or supersede and insert a new one.

        Returns ``(token, created)``. With ``reuse_active`` false an active
        token is always superseded.
        """
        purpose = coerce_purpose(purpose)
        with self._issuance_lock(user_id, purpose):
            if reuse_active:
                with self._data_lock:
                    existing = self._find_active(user_id, purpose, now)
                    if existing is not None:
                        return replace(existing), False
            for _ in range(max(1, max_attempts)):
                code = normalize_code(code_factory())
                with self._data_lock:
                    if user_id not in self.users:
                        raise ConstraintViolation(
                            "token user missing", {"user_id": user_id}
                        )
                    if code in self._codes:
                        self.logger.info(
                            "verification_code_collision", purpose=purpose.value
                        )
                        continue
                    token = VerificationToken.new(
                        user_id, purpose, code, expires_at, now=now
                    )
                    with self._persisted():
                        for pending in self._pending_for_key(user_id, purpose):
                            pending.status = TokenStatus.EXPIRED
                            pending.updated_at = now
                        self.tokens[token.id] = token
                        self._codes[code] = token.id
                    return replace(token), True
        raise StoreError(
            "could not allocate a unique verification code",
            {"attempts": max_attempts},
        )

    def consume_verification_token(
        self, user_id: str, purpose: TokenPurpose, code: str, now: datetime
    ) -> Optional[VerificationToken]:
        purpose = coerce_purpose(purpose)
        code = normalize_code(code)
        with self._issuance_lock(user_id, purpose):
            with self._data_lock:
                token_id = self._codes.get(code)
                token = self.tokens.get(token_id) if token_id else None
                if (
                    token is None
                    or token.user_id != user_id
                    or token.purpose != purpose
                    or not token.is_active(now)
                ):
                    return None
                with self._persisted():
                    token.status = TokenStatus.EXPIRED
                    token.updated_at = now
                    for pending in self._pending_for_key(user_id, purpose):
                        pending.status = TokenStatus.EXPIRED
                        pending.updated_at = now
                return replace(token)

    def list_verification_tokens(
        self, user_id: str, purpose: TokenPurpose
    ) -> List[VerificationToken]:
        purpose = coerce_purpose(purpose)
        with self._data_lock:
            results = [
                replace(t)
                for t in self.tokens.values()
                if t.user_id == user_id and t.purpose == purpose
            ]
        return sorted(results, key=lambda t: t.created_at, reverse=True)

    # persistence
    def _state_path(self) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return ensure_aware(datetime.fromisoformat(raw))

    @contextmanager
    def _persisted(self) -> Iterator[None]:
        """Apply the enclosed mutation and snapshot it, undoing it if the write fails."""
        with self._data_lock:
            saved = self._capture() if self.state_dir is not None else None
            yield
            if saved is None:
                return
            try:
                self._persist_state()
            except StoreError:
                self._restore(saved)
                raise

    def _capture(self) -> Tuple[dict, dict, dict, dict]:
        return (
            {k: replace(v) for k, v in self.users.items()},
            {k: replace(v) for k, v in self.sessions.items()},
            {k: replace(v) for k, v in self.tokens.items()},
            dict(self._codes),
        )

    def _restore(self, saved: Tuple[dict, dict, dict, dict]) -> None:
        self.users, self.sessions, self.tokens, self._codes = saved

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(path.parent), prefix=".auth_store_", suffix=".tmp"
            )
            with os.fdopen(fd, "w") as handle:
                json.dump(state, handle, indent=2)
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path is not None:
                with suppress(OSError):
                    os.unlink(tmp_path)
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StoreError(f"failed to load in-memory state: {exc}") from exc
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self._codes = {t.code: t.id for t in self.tokens.values()}
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            tokens=len(self.tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
            "phone": user.phone,
            "password_hash": user.password_hash,
            "email_verified": user.email_verified,
            "phone_verified": user.phone_verified,
            "role": user.role.value,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            first_name=data["first_name"],
            last_name=data["last_name"],
            email=data["email"],
            phone=data["phone"],
            password_hash=data["password_hash"],
            email_verified=bool(data.get("email_verified", False)),
            phone_verified=bool(data.get("phone_verified", False)),
            role=coerce_role(data.get("role")),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token": session.token,
            "expires_at": self._serialize_datetime(session.expires_at),
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
            "ip_addr": session.ip_addr,
            "user_agent": session.user_agent,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            ip_addr=data.get("ip_addr"),
            user_agent=data.get("user_agent"),
        )

    def _serialize_token(self, token: VerificationToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "code": token.code,
            "purpose": token.purpose.value,
            "status": token.status.value,
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "updated_at": self._serialize_datetime(token.updated_at),
        }

    def _deserialize_token(self, data: dict) -> VerificationToken:
        return VerificationToken(
            id=data["id"],
            user_id=data["user_id"],
            code=data["code"],
            purpose=coerce_purpose(data["purpose"]),
            status=coerce_status(data.get("status", TokenStatus.PENDING.value)),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
