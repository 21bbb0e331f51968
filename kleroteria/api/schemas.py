from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from kleroteria.logging import get_correlation_id

_VALID_ERROR_CODES = {
    "validation_error",
    "rejected",
    "unauthorized",
    "not_found",
    "conflict",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class _CamelRequest(BaseModel):
    # browser clients send camelCase; snake_case is accepted as well
    model_config = ConfigDict(populate_by_name=True, str_max_length=512)


class SignUpRequest(_CamelRequest):
    first_name: str = Field(default="", alias="firstName")
    last_name: str = Field(default="", alias="lastName")
    email: str = ""
    phone: str = Field(default="", max_length=32)
    password: str = ""


class SignInRequest(_CamelRequest):
    email: str = ""
    password: str = ""
    remember_me: bool = Field(default=False, alias="rememberMe")


class VerifyCodeRequest(_CamelRequest):
    code: str = Field(default="", max_length=64)


class UserResponse(BaseModel):
    id: str
    first_name: str
    last_name: str
    name: str
    email: str
    phone: str
    role: str
    email_verified: bool
    phone_verified: bool


class AuthResponse(BaseModel):
    user: UserResponse
    session_expires_at: datetime
    ttl_seconds: int


class TokenResponse(BaseModel):
    id: str
    user_id: str
    code: str
    purpose: str
    status: str
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
