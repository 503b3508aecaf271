from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from latchkey.logging import get_logger
from latchkey.service.auth_store import AuthStore
from latchkey.storage.models import User, utcnow

logger = get_logger(__name__)


def login_tracking(user: User, now: datetime, ip: Optional[str]) -> Dict[str, Any]:
    """Field changes for a successful sign-in.

    The previous sign-in becomes the "last" one; on a user's first sign-in
    both slots hold the current request.
    """
    if user.current_sign_in_at is not None:
        previous = (user.current_sign_in_at, user.current_sign_in_ip)
    elif user.last_sign_in_at is not None:
        previous = (user.last_sign_in_at, user.last_sign_in_ip)
    else:
        previous = (now, ip)
    return {
        "last_sign_in_at": previous[0],
        "last_sign_in_ip": previous[1],
        "current_sign_in_at": now,
        "current_sign_in_ip": ip,
        "sign_in_count": user.sign_in_count + 1,
    }


def logout_tracking(user: User) -> Dict[str, Any]:
    changes: Dict[str, Any] = {
        "current_sign_in_at": None,
        "current_sign_in_ip": None,
    }
    if user.current_sign_in_at is not None:
        changes["last_sign_in_at"] = user.current_sign_in_at
        changes["last_sign_in_ip"] = user.current_sign_in_ip
    return changes


class ActivityTracker:
    """Persists sign-in bookkeeping; a failed write never blocks a login."""

    def __init__(
        self, store: AuthStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def record_login(self, user: User, ip_addr: Optional[str]) -> Tuple[User, bool]:
        changes = login_tracking(user, self._clock(), ip_addr)
        return self._apply(user, changes, op="login")

    def record_logout(self, user: User) -> Tuple[User, bool]:
        return self._apply(user, logout_tracking(user), op="logout")

    def _apply(
        self, user: User, changes: Dict[str, Any], *, op: str
    ) -> Tuple[User, bool]:
        try:
            updated = self.store.update_user(user.id, changes)
        except Exception as exc:
            logger.error(
                "tracking_update_failed", user_id=user.id, op=op, error=str(exc)
            )
            return replace(user, **changes), False
        if updated is None:
            logger.error(
                "tracking_update_failed", user_id=user.id, op=op, error="user missing"
            )
            return replace(user, **changes), False
        return updated, True


__all__ = ["login_tracking", "logout_tracking", "ActivityTracker"]
