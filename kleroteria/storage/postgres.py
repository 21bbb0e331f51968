from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

REQUIRED_TABLES = ("users", "sessions", "tokens")

# constraint name -> offending field, reported in ConstraintViolation.detail
_CONSTRAINT_FIELDS = {
    "users_email_key": "email",
    "users_phone_key": "phone",
    "sessions_token_key": "token",
    "tokens_code_key": "code",
    "tokens_one_pending_idx": "status",
}


class PostgresStore:
    """Postgres-backed store for users, sessions and verification tokens."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Map driver exceptions onto the store error taxonomy."""
        try:
            yield
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            detail: Dict[str, Any] = {"constraint": constraint}
            if constraint in _CONSTRAINT_FIELDS:
                detail["field"] = _CONSTRAINT_FIELDS[constraint]
            raise ConstraintViolation(f"{operation} violated {constraint}", detail) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed", operation=operation, error=str(exc)
            )
            raise StoreError(f"{operation} failed") from exc

    def _verify_required_schema(self) -> None:
        """Ensure the auth tables exist before serving requests."""

        with self._translate_errors("verify_schema"), self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/init_db.py to install the schema.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

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
        now = utcnow()
        user = User(
            id=new_id(),
            first_name=first_name,
            last_name=last_name,
            email=normalize_email(email),
            phone=phone,
            password_hash=password_hash,
            role=coerce_role(role),
            created_at=now,
            updated_at=now,
        )
        with self._translate_errors("create_user"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (id, first_name, last_name, email, phone, password_hash, role, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user.id,
                    user.first_name,
                    user.last_name,
                    user.email,
                    user.phone,
                    user.password_hash,
                    user.role.value,
                    user.created_at,
                    user.updated_at,
                ),
            )
        return user

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        query = sql.SQL("SELECT * FROM users WHERE {} = %s").format(sql.Identifier(where))
        with self._translate_errors("get_user"), self._connect() as conn:
            row = conn.execute(query, (value,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._fetch_user("email", normalize_email(email))

    def get_user_by_phone(self, phone: str) -> Optional[User]:
        return self._fetch_user("phone", phone)

    def set_user_verified(
        self, user_id: str, field_name: str, value: bool
    ) -> Optional[User]:
        validate_verified_field(field_name)
        query = sql.SQL(
            "UPDATE users SET {} = %s, updated_at = %s WHERE id = %s RETURNING *"
        ).format(sql.Identifier(field_name))
        with self._translate_errors("set_user_verified"), self._connect() as conn:
            row = conn.execute(query, (bool(value), utcnow(), user_id)).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._translate_errors("delete_user"), self._connect() as conn:
            result = conn.execute("DELETE FROM users WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._translate_errors("insert_session"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, user_id, token, ip_addr, user_agent, expires_at, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.user_id,
                    session.token,
                    session.ip_addr,
                    session.user_agent,
                    session.expires_at,
                    session.created_at,
                    session.updated_at,
                ),
            )
        return session

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._translate_errors("get_session"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE token = %s", (token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session_by_token(self, token: str) -> bool:
        with self._translate_errors("delete_session"), self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE token = %s", (token,))
            return result.rowcount > 0

    def delete_expired_sessions(self, user_id: str, now: datetime) -> int:
        with self._translate_errors("delete_expired_sessions"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM sessions WHERE user_id = %s AND expires_at <= %s",
                (user_id, now),
            )
            return result.rowcount

    def list_user_sessions(self, user_id: str) -> List[Session]:
        with self._translate_errors("list_sessions"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # verification tokens
    def get_active_verification_token(
        self, user_id: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]:
        purpose = coerce_purpose(purpose)
        with self._translate_errors("get_active_token"), self._connect() as conn:
            row = self._select_active(conn, user_id, purpose, now)
        return self._token_from_row(row) if row else None

    @staticmethod
    def _select_active(conn, user_id: str, purpose: TokenPurpose, now: datetime):
        return conn.execute(
            """
            SELECT * FROM tokens
            WHERE user_id = %s AND purpose = %s AND status = 'PENDING' AND expires_at > %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (user_id, purpose.value, now),
        ).fetchone()

    @staticmethod
    def _lock_key(conn, user_id: str, purpose: TokenPurpose) -> None:
        # released automatically at commit/rollback
        conn.execute(
            "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
            (issuance_key(user_id, purpose),),
        )

    @staticmethod
    def _expire_pending(conn, user_id: str, purpose: TokenPurpose, now: datetime) -> int:
        result = conn.execute(
            """
            UPDATE tokens SET status = 'EXPIRED', updated_at = %s
            WHERE user_id = %s AND purpose = %s AND status = 'PENDING'
            """,
            (now, user_id, purpose.value),
        )
        return result.rowcount

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

        Runs in one transaction holding an advisory lock on ``user_id:purpose``.
        A code collision rolls back only its savepoint and is retried with a
        fresh code.
        """
        purpose = coerce_purpose(purpose)
        with self._translate_errors("issue_verification_token"):
            with self._connect() as conn, conn.transaction():
                self._lock_key(conn, user_id, purpose)
                if reuse_active:
                    row = self._select_active(conn, user_id, purpose, now)
                    if row:
                        return self._token_from_row(row), False
                self._expire_pending(conn, user_id, purpose, now)
                for _ in range(max(1, max_attempts)):
                    token = VerificationToken.new(
                        user_id,
                        purpose,
                        normalize_code(code_factory()),
                        expires_at,
                        now=now,
                    )
                    try:
                        with conn.transaction():
                            self._insert_token(conn, token)
                    except errors.UniqueViolation as exc:
                        if getattr(exc.diag, "constraint_name", None) != "tokens_code_key":
                            raise
                        self.logger.info(
                            "verification_code_collision", purpose=purpose.value
                        )
                        continue
                    return token, True
                # raising inside the block rolls back the supersede as well
                raise StoreError(
                    "could not allocate a unique verification code",
                    {"attempts": max_attempts},
                )

    @staticmethod
    def _insert_token(conn, token: VerificationToken) -> None:
        conn.execute(
            """
            INSERT INTO tokens (id, user_id, code, purpose, status, expires_at, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.user_id,
                token.code,
                token.purpose.value,
                token.status.value,
                token.expires_at,
                token.created_at,
                token.updated_at,
            ),
        )

    def consume_verification_token(
        self, user_id: str, purpose: TokenPurpose, code: str, now: datetime
    ) -> Optional[VerificationToken]:
        purpose = coerce_purpose(purpose)
        with self._translate_errors("consume_verification_token"):
            with self._connect() as conn, conn.transaction():
                self._lock_key(conn, user_id, purpose)
                row = conn.execute(
                    """
                    UPDATE tokens SET status = 'EXPIRED', updated_at = %s
                    WHERE code = %s AND user_id = %s AND purpose = %s
                      AND status = 'PENDING' AND expires_at > %s
                    RETURNING *
                    """,
                    (now, normalize_code(code), user_id, purpose.value, now),
                ).fetchone()
                if not row:
                    return None
                self._expire_pending(conn, user_id, purpose, now)
        return self._token_from_row(row)

    def list_verification_tokens(
        self, user_id: str, purpose: TokenPurpose
    ) -> List[VerificationToken]:
        purpose = coerce_purpose(purpose)
        with self._translate_errors("list_tokens"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tokens WHERE user_id = %s AND purpose = %s ORDER BY created_at DESC",
                (user_id, purpose.value),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    # row mapping
    @staticmethod
    def _user_from_row(row: dict) -> User:
        return User(
            id=str(row["id"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            email=row["email"],
            phone=row["phone"],
            password_hash=row["password_hash"],
            email_verified=bool(row.get("email_verified", False)),
            phone_verified=bool(row.get("phone_verified", False)),
            role=coerce_role(row.get("role")),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
            ip_addr=row.get("ip_addr"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _token_from_row(row: dict) -> VerificationToken:
        return VerificationToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            code=row["code"],
            purpose=coerce_purpose(row["purpose"]),
            status=coerce_status(row.get("status", TokenStatus.PENDING.value)),
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
        )
