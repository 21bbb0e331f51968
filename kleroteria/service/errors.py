from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer errors carried in ``Err`` results.

    Each class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - validation_error (400)
    - rejected (400)
    - unauthorized (401)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class RejectedError(ServiceError):
    """Well-formed request refused, e.g. wrong or expired code (400)."""
    status_code = 400
    error_code = "rejected"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate sign-up (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class HashingFailed(Exception):
    """Password hashing failed inside the hashing library."""


class SendError(Exception):
    """A notification could not be delivered."""

    def __init__(self, message: str, *, channel: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.channel = channel


__all__ = [
    "ServiceError",
    "ValidationError",
    "RejectedError",
    "AuthenticationError",
    "ConflictError",
    "ServerError",
    "HashingFailed",
    "SendError",
]
