from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Union

from latchkey.config import FeatureSet, LoginField
from latchkey.logging import get_logger
from latchkey.service.auth_store import AuthStore
from latchkey.service.errors import RejectReason, reject_message
from latchkey.service.lockout import LockoutPolicy
from latchkey.service.passwords import Argon2PasswordVerifier, PasswordVerifier
from latchkey.service.remember import CookieDirective, RememberTokenAuthenticator
from latchkey.service.tracking import ActivityTracker
from latchkey.storage.models import Session, User

logger = get_logger(__name__)


def default_is_confirmed(user: User) -> bool:
    return user.confirmed_at is not None


@dataclass(frozen=True)
class Established:
    user: User
    session: Session
    tracking_updated: bool = False
    cookie: Optional[CookieDirective] = None


@dataclass(frozen=True)
class Rejected:
    reason: RejectReason
    message: str = ""


AuthResult = Union[Established, Rejected]


@dataclass(frozen=True)
class LogoutResult:
    session_revoked: bool
    tracking_updated: bool = False
    cookie: Optional[CookieDirective] = None


class SessionAuthenticator:
    """Interactive login: password check, confirmation, lockout, then session.

    A wrong password is counted before anything else is looked at, so an
    attacker cannot probe confirmation or lock state without paying for it.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        features: FeatureSet,
        login_field: LoginField = LoginField.EMAIL,
        session_ttl_minutes: int = 60 * 24,
        verifier: Optional[PasswordVerifier] = None,
        lockout: Optional[LockoutPolicy] = None,
        tracker: Optional[ActivityTracker] = None,
        remember: Optional[RememberTokenAuthenticator] = None,
        is_confirmed: Callable[[User], bool] = default_is_confirmed,
    ) -> None:
        self.store = store
        self.features = features
        self.login_field = LoginField(login_field)
        self.session_ttl_minutes = session_ttl_minutes
        self.verifier = verifier or Argon2PasswordVerifier()
        self.lockout = lockout if features.lockable else None
        self.tracker = tracker if features.trackable else None
        self.remember = remember if features.rememberable else None
        self._is_confirmed = is_confirmed

    def _reject(self, reason: RejectReason, **log_context) -> Rejected:
        logger.info("login_failed", reason=reason.value, **log_context)
        return Rejected(
            reason=reason,
            message=reject_message(reason, login_field=self.login_field.value),
        )

    def is_confirmed(self, user: User) -> bool:
        if not self.features.confirmable:
            return True
        return self._is_confirmed(user)

    def authenticate(
        self,
        identity: str,
        password: str,
        *,
        remember: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = self.store.get_user_by_login(self.login_field.value, identity)
        if user is None:
            # Spend a hash verification so unknown accounts are not faster
            burn = getattr(self.verifier, "burn", None)
            if burn is not None:
                burn(password)
            return self._reject(RejectReason.INVALID_CREDENTIALS, ip_addr=ip_addr)

        if not self.verifier.verify(password, user.password_hash):
            if self.lockout is None:
                return self._reject(RejectReason.INVALID_CREDENTIALS, user_id=user.id)
            update = self.lockout.record_failure(user)
            if update.just_locked or update.locked:
                return self._reject(RejectReason.LOCKED, user_id=user.id)
            return self._reject(
                RejectReason.INVALID_CREDENTIALS,
                user_id=user.id,
                failed_attempts=update.user.failed_attempts,
            )

        if not self.is_confirmed(user):
            return self._reject(RejectReason.UNCONFIRMED, user_id=user.id)

        if self.lockout is not None and self.lockout.is_locked(user):
            return self._reject(RejectReason.LOCKED, user_id=user.id)

        if not user.is_active:
            return self._reject(RejectReason.INVALID_CREDENTIALS, user_id=user.id)

        if self.lockout is not None:
            user = self.lockout.record_success(user)

        session = self.store.create_session(
            user.id,
            self.session_ttl_minutes,
            user_agent,
            ip_addr,
            remembered=False,
        )

        tracking_updated = False
        if self.tracker is not None:
            user, tracking_updated = self.tracker.record_login(user, ip_addr)

        cookie = None
        if remember and self.remember is not None:
            cookie = self.remember.issue(user)

        logger.info(
            "login_succeeded",
            user_id=user.id,
            session_id=session.id,
            remembered=cookie is not None,
        )
        return Established(
            user=user,
            session=session,
            tracking_updated=tracking_updated,
            cookie=cookie,
        )

    def logout(
        self,
        user: User,
        session_id: Optional[str] = None,
        *,
        cookie_value: Optional[str] = None,
    ) -> LogoutResult:
        revoked = False
        if session_id:
            self.store.revoke_session(session_id)
            revoked = True

        tracking_updated = False
        if self.tracker is not None:
            _, tracking_updated = self.tracker.record_logout(user)

        cookie = None
        if self.remember is not None:
            cookie = self.remember.logout(user, cookie_value)

        logger.info("logout_succeeded", user_id=user.id, session_id=session_id)
        return LogoutResult(
            session_revoked=revoked, tracking_updated=tracking_updated, cookie=cookie
        )


__all__ = [
    "AuthResult",
    "Established",
    "Rejected",
    "LogoutResult",
    "SessionAuthenticator",
    "default_is_confirmed",
]
