"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from kleroteria.storage.models import TokenPurpose, TokenStatus, UserRole

VERIFIED_FIELDS = frozenset({"email_verified", "phone_verified"})


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def normalize_code(code: str) -> str:
    """Codes are stored uppercase; lookups are case-insensitive."""
    return (code or "").strip().upper()


def coerce_purpose(purpose: Any) -> TokenPurpose:
    if isinstance(purpose, TokenPurpose):
        return purpose
    return TokenPurpose(str(purpose).upper())


def coerce_status(status: Any) -> TokenStatus:
    if isinstance(status, TokenStatus):
        return status
    return TokenStatus(str(status).upper())


def coerce_role(role: Any) -> UserRole:
    if isinstance(role, UserRole):
        return role
    return UserRole(str(role or UserRole.FREE.value).upper())


def issuance_key(user_id: str, purpose: TokenPurpose) -> str:
    """Serialization key for token issuance; disjoint keys never contend."""
    return f"{user_id}:{coerce_purpose(purpose).value}"


def validate_verified_field(field_name: str) -> str:
    if field_name not in VERIFIED_FIELDS:
        raise ValueError(f"unsupported verified flag: {field_name}")
    return field_name


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps from storage as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
