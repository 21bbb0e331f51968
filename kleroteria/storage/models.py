from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Random 32-char hex identifier."""
    return secrets.token_hex(16)


class UserRole(str, Enum):
    FREE = "FREE"
    PAID = "PAID"


class TokenPurpose(str, Enum):
    """Contact channel a verification code proves control of."""

    EMAIL = "EMAIL"
    PHONE = "PHONE"


class TokenStatus(str, Enum):
    PENDING = "PENDING"
    EXPIRED = "EXPIRED"


# User attribute flipped by a successful verification for each purpose
VERIFIED_FLAG_FOR_PURPOSE: Dict[TokenPurpose, str] = {
    TokenPurpose.EMAIL: "email_verified",
    TokenPurpose.PHONE: "phone_verified",
}


@dataclass
class User:
    id: str
    first_name: str
    last_name: str
    email: str
    phone: str
    password_hash: str = field(repr=False)
    email_verified: bool = False
    phone_verified: bool = False
    role: UserRole = UserRole.FREE
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def public(self) -> "PublicUser":
        return PublicUser(
            id=self.id,
            first_name=self.first_name,
            last_name=self.last_name,
            name=self.name,
            email=self.email,
            phone=self.phone,
            role=self.role,
            email_verified=self.email_verified,
            phone_verified=self.phone_verified,
        )


@dataclass
class Session:
    id: str
    user_id: str
    token: str = field(repr=False)
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta,
        *,
        ip_addr: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            # 32 random bytes = 256 bits of entropy
            token=secrets.token_hex(32),
            expires_at=now + ttl,
            created_at=now,
            updated_at=now,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class VerificationToken:
    id: str
    user_id: str
    code: str
    purpose: TokenPurpose
    expires_at: datetime
    status: TokenStatus = TokenStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        purpose: TokenPurpose,
        code: str,
        expires_at: datetime,
        *,
        now: datetime | None = None,
    ) -> "VerificationToken":
        now = now or utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            code=code,
            purpose=purpose,
            expires_at=expires_at,
            status=TokenStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    def is_active(self, now: datetime) -> bool:
        """PENDING and not yet past expiry; a stale PENDING row counts as expired."""
        return self.status == TokenStatus.PENDING and self.expires_at > now

    def effective_status(self, now: datetime) -> TokenStatus:
        return TokenStatus.PENDING if self.is_active(now) else TokenStatus.EXPIRED

    def public(self) -> "PublicToken":
        return PublicToken(
            id=self.id,
            user_id=self.user_id,
            code=self.code,
            purpose=self.purpose,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
            expires_at=self.expires_at,
        )


@dataclass(frozen=True)
class PublicUser:
    id: str
    first_name: str
    last_name: str
    name: str
    email: str
    phone: str
    role: UserRole
    email_verified: bool
    phone_verified: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "role": self.role.value,
            "email_verified": self.email_verified,
            "phone_verified": self.phone_verified,
        }


@dataclass(frozen=True)
class PublicToken:
    id: str
    user_id: str
    code: str
    purpose: TokenPurpose
    status: TokenStatus
    created_at: datetime
    updated_at: datetime
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "code": self.code,
            "purpose": self.purpose.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }
