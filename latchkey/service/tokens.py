"""Persistent-login ("remember me") token ledger.

A lineage is one row per user per browser: an immutable ``series`` and a
``token`` that is replaced after every successful use. Only SHA-256 digests
of both values are stored. Presenting a known series with a stale token
means an old cookie was replayed after the legitimate owner rotated it, so
every lineage of that user is deleted.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple

from latchkey.config import TokenSweepMode
from latchkey.logging import get_logger
from latchkey.service.auth_store import AuthStore
from latchkey.service.errors import RotationConflict, ServerError
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import PersistentLoginToken, User, utcnow

logger = get_logger(__name__)

SERIES_LENGTH = 10
TOKEN_LENGTH = 24
_MAX_SERIES_ATTEMPTS = 3


def generate_secret(length: int) -> str:
    """Random string of ``length`` chars from the URL-safe base64 alphabet."""
    return secrets.token_urlsafe(length)[:length]


def hash_secret(value: str) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii")


def format_cookie_value(user_id: str, series: str, token: str) -> str:
    return f"{user_id} {series} {token}"


def parse_cookie_value(value: Optional[str]) -> Optional[Tuple[str, str, str]]:
    """Split a cookie into ``(user_id, series, token)`` or None when malformed."""
    if not value:
        return None
    parts = value.strip().split(" ")
    if len(parts) != 3 or not all(parts):
        return None
    user_id, series, token = parts
    return user_id, series, token


@dataclass(frozen=True)
class IssuedLogin:
    series: str
    token: str
    record: PersistentLoginToken

    def cookie_value(self) -> str:
        return format_cookie_value(self.record.user_id, self.series, self.token)


class ValidationStatus(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    INVALID_TOKEN = "invalid_token"


@dataclass(frozen=True)
class LoginValidation:
    status: ValidationStatus
    record: Optional[PersistentLoginToken] = None
    invalidated: int = 0

    @property
    def ok(self) -> bool:
        return self.status == ValidationStatus.OK


class TokenLedger:
    def __init__(
        self,
        store: AuthStore,
        *,
        expire_hours: int,
        sweep_mode: TokenSweepMode = TokenSweepMode.INLINE,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.expire_hours = expire_hours
        self.sweep_mode = TokenSweepMode(sweep_mode)
        self._clock = clock

    @property
    def max_age(self) -> timedelta:
        return timedelta(hours=self.expire_hours)

    def create_login(self, user: User) -> IssuedLogin:
        """Start a new lineage for ``user``; earlier lineages stay valid."""
        for _ in range(_MAX_SERIES_ATTEMPTS):
            series = generate_secret(SERIES_LENGTH)
            token = generate_secret(TOKEN_LENGTH)
            record = PersistentLoginToken.new(
                user_id=user.id,
                series_hash=hash_secret(series),
                token_hash=hash_secret(token),
            )
            try:
                stored = self.store.insert_login_token(record)
            except ConstraintViolation as exc:
                if exc.detail.get("reason") == "user_missing":
                    raise ServerError("cannot issue login token", detail={"user_id": user.id})
                logger.warning("login_series_collision", user_id=user.id)
                continue
            except Exception as exc:
                logger.error("login_token_issue_failed", user_id=user.id, error=str(exc))
                raise ServerError("cannot issue login token", detail={"user_id": user.id})
            return IssuedLogin(series=series, token=token, record=stored)
        raise ServerError("cannot allocate login series", detail={"user_id": user.id})

    def validate_login(self, user_id: str, series: str, token: str) -> LoginValidation:
        if self.sweep_mode == TokenSweepMode.INLINE:
            try:
                self.sweep_expired()
            except Exception as exc:
                logger.error("token_sweep_failed", error=str(exc))

        series_hash = hash_secret(series)
        token_hash = hash_secret(token)

        if self.store.count_mismatched_login_tokens(user_id, series_hash, token_hash):
            deleted = self.store.delete_login_tokens_for_user(user_id)
            return LoginValidation(ValidationStatus.INVALID_TOKEN, invalidated=deleted)

        record = self.store.get_login_token(user_id, series_hash, token_hash)
        if record is None:
            return LoginValidation(ValidationStatus.NOT_FOUND)
        return LoginValidation(ValidationStatus.OK, record=record)

    def rotate(self, record: PersistentLoginToken) -> Tuple[str, PersistentLoginToken]:
        """Replace the token of an accepted lineage, keeping its series.

        Raises RotationConflict when another request already consumed the
        same token.
        """
        new_token = generate_secret(TOKEN_LENGTH)
        try:
            updated = self.store.rotate_login_token(
                record.id, record.token_hash, hash_secret(new_token), now=self._clock()
            )
        except Exception as exc:
            logger.error(
                "login_token_rotation_failed", user_id=record.user_id, error=str(exc)
            )
            raise ServerError(
                "cannot rotate login token", detail={"user_id": record.user_id}
            )
        if updated is None:
            raise RotationConflict(record.user_id, record.id)
        return new_token, updated

    def invalidate_user(self, user_id: str) -> int:
        return self.store.delete_login_tokens_for_user(user_id)

    def delete_lineage(self, user_id: str, series: str) -> int:
        return self.store.delete_login_token(user_id, hash_secret(series))

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - self.max_age
        removed = self.store.delete_login_tokens_older_than(cutoff)
        if removed:
            logger.info("expired_tokens_swept", count=removed, cutoff=cutoff.isoformat())
        return removed

    def list_lineages(self, user_id: str) -> List[PersistentLoginToken]:
        return self.store.list_login_tokens(user_id)


__all__ = [
    "SERIES_LENGTH",
    "TOKEN_LENGTH",
    "generate_secret",
    "hash_secret",
    "format_cookie_value",
    "parse_cookie_value",
    "IssuedLogin",
    "ValidationStatus",
    "LoginValidation",
    "TokenLedger",
]
