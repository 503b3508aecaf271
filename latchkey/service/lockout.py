from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional

from latchkey.logging import get_logger
from latchkey.service.auth_store import AuthStore
from latchkey.service.errors import ConflictError, NotFoundError, ServerError
from latchkey.storage.models import User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutUpdate:
    user: User
    just_locked: bool

    @property
    def locked(self) -> bool:
        return self.user.locked_at is not None


class LockoutPolicy:
    """Failed-attempt counter with a terminal Locked state.

    Locking is only undone by ``unlock``; a correct password never clears
    ``locked_at``.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        max_attempts: int,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self._clock = clock

    @staticmethod
    def is_locked(user: User) -> bool:
        return user.locked_at is not None

    def record_failure(self, user: User) -> LockoutUpdate:
        now = self._clock()
        was_locked = self.is_locked(user)
        updated: Optional[User] = None
        try:
            updated = self.store.record_failed_login(user.id, self.max_attempts, now=now)
        except Exception as exc:
            logger.error("lockout_update_failed", user_id=user.id, error=str(exc))
        if updated is None:
            # Counter not persisted; decide from the record we were given
            attempts = user.failed_attempts + 1
            locked_at = user.locked_at
            if locked_at is None and attempts >= self.max_attempts:
                locked_at = now
            updated = replace(user, failed_attempts=attempts, locked_at=locked_at)

        just_locked = not was_locked and updated.locked_at == now
        if just_locked:
            logger.warning(
                "account_locked",
                user_id=user.id,
                failed_attempts=updated.failed_attempts,
            )
        return LockoutUpdate(user=updated, just_locked=just_locked)

    def record_success(self, user: User) -> User:
        if user.failed_attempts <= 0:
            return user
        try:
            updated = self.store.reset_failed_attempts(user.id)
        except Exception as exc:
            logger.error("lockout_update_failed", user_id=user.id, error=str(exc))
            return user
        return updated or replace(user, failed_attempts=0)

    def lock(self, user: User) -> User:
        if self.is_locked(user):
            raise ConflictError("already locked", detail={"user_id": user.id})
        return self._write(user, {"locked_at": self._clock()})

    def unlock(self, user: User) -> User:
        if not self.is_locked(user):
            raise ConflictError("not locked", detail={"user_id": user.id})
        return self._write(user, {"locked_at": None, "failed_attempts": 0})

    def _write(self, user: User, changes: dict) -> User:
        try:
            updated = self.store.update_user(user.id, changes)
        except Exception as exc:
            logger.error("lockout_update_failed", user_id=user.id, error=str(exc))
            raise ServerError("cannot update lock state", detail={"user_id": user.id})
        if updated is None:
            raise NotFoundError("user not found", detail={"user_id": user.id})
        return updated


__all__ = ["LockoutPolicy", "LockoutUpdate"]
