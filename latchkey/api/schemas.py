from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from latchkey.logging import get_correlation_id

MAX_LOGIN_LENGTH = 254
MAX_PASSWORD_LENGTH = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

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


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=MAX_LOGIN_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    remember: bool = False

    @field_validator("login")
    @classmethod
    def _strip_login(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("login must not be blank")
        return stripped


class AuthResponse(BaseModel):
    user_id: str
    session_id: str
    session_expires_at: datetime
    remembered: bool = False


class IdentityResponse(BaseModel):
    user_id: str
    email: str
    handle: Optional[str] = None
    session_id: str
    session_expires_at: datetime
    remembered: bool = False
    sign_in_count: int = 0
    current_sign_in_at: Optional[datetime] = None
    last_sign_in_at: Optional[datetime] = None
