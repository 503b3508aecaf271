from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    # confirmable
    confirmed_at: Optional[datetime] = None
    # lockable
    failed_attempts: int = 0
    locked_at: Optional[datetime] = None
    # trackable
    sign_in_count: int = 0
    current_sign_in_at: Optional[datetime] = None
    current_sign_in_ip: Optional[str] = None
    last_sign_in_at: Optional[datetime] = None
    last_sign_in_ip: Optional[str] = None
    meta: Dict | None = None


# Columns the authentication core is allowed to write on a user record
USER_MUTABLE_FIELDS = frozenset(
    {
        "handle",
        "password_hash",
        "password_algo",
        "is_active",
        "confirmed_at",
        "failed_attempts",
        "locked_at",
        "sign_in_count",
        "current_sign_in_at",
        "current_sign_in_ip",
        "last_sign_in_at",
        "last_sign_in_ip",
        "meta",
    }
)


@dataclass
class PersistentLoginToken:
    """One persistent-login lineage for a user on one browser or device."""

    id: str
    user_id: str
    series_hash: str
    token_hash: str
    token_created_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, user_id: str, series_hash: str, token_hash: str) -> "PersistentLoginToken":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            series_hash=series_hash,
            token_hash=token_hash,
            token_created_at=now,
            created_at=now,
        )


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None
    remembered: bool = False
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        remembered: bool = False,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
            remembered=remembered,
            meta=meta,
        )
