from __future__ import annotations

from enum import Enum
from typing import Optional


class RejectReason(str, Enum):
    """Why an authentication attempt did not establish a session."""

    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED = "locked"
    UNCONFIRMED = "unconfirmed"
    TOKEN_NOT_FOUND = "token_not_found"
    TOKEN_THEFT_DETECTED = "token_theft_detected"


INVALID_CREDENTIALS_MESSAGE = "Incorrect {login_field} or password."
LOCKED_MESSAGE = "Maximum login attempts exceeded. Your account has been locked."
UNCONFIRMED_MESSAGE = "You must confirm your account before you can login."
TOKEN_THEFT_MESSAGE = (
    "You are using an invalid security token for this site! "
    "This security violation has been logged."
)


def reject_message(reason: RejectReason, *, login_field: str = "email") -> str:
    """User-visible text for a rejection reason."""

    if reason == RejectReason.LOCKED:
        return LOCKED_MESSAGE
    if reason == RejectReason.UNCONFIRMED:
        return UNCONFIRMED_MESSAGE
    if reason == RejectReason.TOKEN_THEFT_DETECTED:
        return TOKEN_THEFT_MESSAGE
    if reason == RejectReason.TOKEN_NOT_FOUND:
        return "Authentication required."
    return INVALID_CREDENTIALS_MESSAGE.format(login_field=login_field)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. locking an already locked account (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class RotationConflict(Exception):
    """Another request rotated the same persistent-login token first."""

    def __init__(self, user_id: str, token_id: str) -> None:
        super().__init__(f"token {token_id} was rotated concurrently")
        self.user_id = user_id
        self.token_id = token_id


__all__ = [
    "RejectReason",
    "reject_message",
    "INVALID_CREDENTIALS_MESSAGE",
    "LOCKED_MESSAGE",
    "UNCONFIRMED_MESSAGE",
    "TOKEN_THEFT_MESSAGE",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "RotationConflict",
]
