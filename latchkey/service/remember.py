from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from latchkey.logging import get_logger
from latchkey.service.auth_store import AuthStore
from latchkey.service.credential_store import CachedIdentity, CredentialStore
from latchkey.service.errors import (
    TOKEN_THEFT_MESSAGE,
    RejectReason,
    RotationConflict,
)
from latchkey.service.tokens import (
    TokenLedger,
    ValidationStatus,
    format_cookie_value,
    parse_cookie_value,
)
from latchkey.service.tracking import ActivityTracker
from latchkey.storage.models import Session, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class CookieDirective:
    """Instruction for the HTTP layer to set or clear one cookie."""

    name: str
    value: Optional[str]
    max_age: int

    @classmethod
    def set_cookie(cls, name: str, value: str, max_age: int) -> "CookieDirective":
        return cls(name=name, value=value, max_age=max_age)

    @classmethod
    def clear_cookie(cls, name: str) -> "CookieDirective":
        return cls(name=name, value=None, max_age=0)

    @property
    def clears(self) -> bool:
        return self.value is None


class RememberStatus(str, Enum):
    ESTABLISHED = "established"
    ANONYMOUS = "anonymous"
    THEFT_DETECTED = "theft_detected"


@dataclass(frozen=True)
class RememberResult:
    status: RememberStatus
    user: Optional[User] = None
    session: Optional[Session] = None
    cookie: Optional[CookieDirective] = None
    from_cache: bool = False
    reason: Optional[RejectReason] = None

    @property
    def established(self) -> bool:
        return self.status == RememberStatus.ESTABLISHED

    @property
    def message(self) -> Optional[str]:
        if self.status == RememberStatus.THEFT_DETECTED:
            return TOKEN_THEFT_MESSAGE
        return None


class RememberTokenAuthenticator:
    """Authenticates requests that carry a persistent-login cookie.

    The credential store is consulted first; a hit resolves the user without
    touching the ledger and without rotating. On a miss the ledger decides,
    and an accepted cookie is always rotated in the ledger before the new
    value is cached.
    """

    def __init__(
        self,
        store: AuthStore,
        ledger: TokenLedger,
        credential_store: CredentialStore,
        *,
        cookie_name: str,
        cookie_max_age: int,
        session_ttl_minutes: int = 60 * 24,
        tracker: Optional[ActivityTracker] = None,
        lockable: bool = True,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.credential_store = credential_store
        self.cookie_name = cookie_name
        self.cookie_max_age = cookie_max_age
        self.session_ttl_minutes = session_ttl_minutes
        self.tracker = tracker
        self.lockable = lockable

    def issue(self, user: User) -> CookieDirective:
        """Open a new lineage for ``user`` and return the cookie to set."""
        issued = self.ledger.create_login(user)
        return CookieDirective.set_cookie(
            self.cookie_name, issued.cookie_value(), self.cookie_max_age
        )

    def authenticate(
        self,
        cookie_value: Optional[str],
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RememberResult:
        parsed = parse_cookie_value(cookie_value)
        if parsed is None:
            logger.debug("remember_cookie_malformed")
            return self._anonymous(RejectReason.TOKEN_NOT_FOUND, clear=True)
        user_id, series, token = parsed

        cached = self._cache_get(cookie_value)
        if cached is not None:
            user = self.store.get_user(cached.user_id)
            if user is None or not self._usable(user):
                self._cache_delete(cookie_value)
                return self._anonymous(RejectReason.TOKEN_NOT_FOUND, clear=True)
            session = self._open_session(user, ip_addr, user_agent)
            return RememberResult(
                status=RememberStatus.ESTABLISHED,
                user=user,
                session=session,
                from_cache=True,
            )

        validation = self.ledger.validate_login(user_id, series, token)
        if validation.status == ValidationStatus.INVALID_TOKEN:
            self._cache_delete(cookie_value)
            self._cache_evict_user(user_id)
            logger.warning(
                "remember_token_theft_detected",
                user_id=user_id,
                lineages_deleted=validation.invalidated,
                ip_addr=ip_addr,
            )
            return RememberResult(
                status=RememberStatus.THEFT_DETECTED,
                cookie=CookieDirective.clear_cookie(self.cookie_name),
                reason=RejectReason.TOKEN_THEFT_DETECTED,
            )
        if validation.status == ValidationStatus.NOT_FOUND:
            logger.debug("remember_token_not_found", user_id=user_id)
            return self._anonymous(RejectReason.TOKEN_NOT_FOUND, clear=True)

        user = self.store.get_user(user_id)
        if user is None or not self._usable(user):
            logger.debug("remember_token_user_unavailable", user_id=user_id)
            return self._anonymous(RejectReason.TOKEN_NOT_FOUND, clear=True)

        self._cache_delete(cookie_value)
        try:
            new_token, _ = self.ledger.rotate(validation.record)
        except RotationConflict:
            # The concurrent winner sets the fresh cookie; leave it alone
            logger.warning("remember_token_rotation_conflict", user_id=user_id)
            return self._anonymous(RejectReason.TOKEN_NOT_FOUND, clear=False)

        new_value = format_cookie_value(user_id, series, new_token)
        self._cache_put(new_value, CachedIdentity(user_id=user.id))
        session = self._open_session(user, ip_addr, user_agent)
        if self.tracker is not None:
            user, _ = self.tracker.record_login(user, ip_addr)
        logger.info("remember_login_succeeded", user_id=user.id, session_id=session.id)
        return RememberResult(
            status=RememberStatus.ESTABLISHED,
            user=user,
            session=session,
            cookie=CookieDirective.set_cookie(
                self.cookie_name, new_value, self.cookie_max_age
            ),
        )

    def identify(self, cookie_value: Optional[str]) -> Optional[User]:
        """Resolve the cookie's owner without rotating, opening a session or tracking.

        A replayed token still triggers the theft response in the ledger.
        """
        parsed = parse_cookie_value(cookie_value)
        if parsed is None:
            return None
        user_id, series, token = parsed

        cached = self._cache_get(cookie_value)
        if cached is not None:
            return self.store.get_user(cached.user_id)

        validation = self.ledger.validate_login(user_id, series, token)
        if validation.status == ValidationStatus.INVALID_TOKEN:
            self._cache_evict_user(user_id)
            logger.warning(
                "remember_token_theft_detected",
                user_id=user_id,
                lineages_deleted=validation.invalidated,
            )
            return None
        if not validation.ok:
            return None
        return self.store.get_user(user_id)

    def logout(self, user: User, cookie_value: Optional[str] = None) -> CookieDirective:
        """Drop every lineage of ``user`` and clear the cookie."""
        deleted = self.ledger.invalidate_user(user.id)
        if cookie_value:
            self._cache_delete(cookie_value)
        self._cache_evict_user(user.id)
        logger.info("remember_tokens_revoked", user_id=user.id, count=deleted)
        return CookieDirective.clear_cookie(self.cookie_name)

    def _usable(self, user: User) -> bool:
        if not user.is_active:
            return False
        return not (self.lockable and user.locked_at is not None)

    def _open_session(
        self, user: User, ip_addr: Optional[str], user_agent: Optional[str]
    ) -> Session:
        return self.store.create_session(
            user.id,
            self.session_ttl_minutes,
            user_agent,
            ip_addr,
            remembered=True,
        )

    def _anonymous(self, reason: RejectReason, *, clear: bool) -> RememberResult:
        return RememberResult(
            status=RememberStatus.ANONYMOUS,
            cookie=CookieDirective.clear_cookie(self.cookie_name) if clear else None,
            reason=reason,
        )

    # The cache only saves ledger round-trips, so its failures never fail a request
    def _cache_get(self, cookie_value: str) -> Optional[CachedIdentity]:
        try:
            return self.credential_store.get(cookie_value)
        except Exception as exc:
            logger.warning("credential_store_unavailable", op="get", error=str(exc))
            return None

    def _cache_put(self, cookie_value: str, identity: CachedIdentity) -> None:
        try:
            self.credential_store.put(cookie_value, identity)
        except Exception as exc:
            logger.warning("credential_store_unavailable", op="put", error=str(exc))

    def _cache_delete(self, cookie_value: str) -> None:
        try:
            self.credential_store.delete(cookie_value)
        except Exception as exc:
            logger.warning("credential_store_unavailable", op="delete", error=str(exc))

    def _cache_evict_user(self, user_id: str) -> None:
        try:
            self.credential_store.evict_user(user_id)
        except Exception as exc:
            logger.warning("credential_store_unavailable", op="evict_user", error=str(exc))


__all__ = [
    "CookieDirective",
    "RememberStatus",
    "RememberResult",
    "RememberTokenAuthenticator",
]
