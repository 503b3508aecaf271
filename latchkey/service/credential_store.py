from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Dict, Optional, Protocol, Tuple

from latchkey.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CachedIdentity:
    """Enough to re-resolve a user without touching the token ledger."""

    user_id: str
    user_schema: str = "User"
    id_key: str = "id"

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "user_schema": self.user_schema,
            "id_key": self.id_key,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CachedIdentity":
        return cls(
            user_id=str(data["user_id"]),
            user_schema=data.get("user_schema", "User"),
            id_key=data.get("id_key", "id"),
        )


class CredentialStore(Protocol):
    """Cache keyed by the exact plaintext persistent-login cookie value."""

    def put(self, cookie_value: str, identity: CachedIdentity) -> None:
        ...

    def get(self, cookie_value: str) -> Optional[CachedIdentity]:
        ...

    def delete(self, cookie_value: str) -> None:
        ...

    def evict_user(self, user_id: str) -> int:
        ...

    def clear(self) -> None:
        ...

    def close(self) -> None:
        ...


class InMemoryCredentialStore:
    """Process-wide credential cache guarded by a single lock.

    Entries older than ``ttl_seconds`` are treated as misses. When
    ``max_entries`` is reached the oldest tenth of the entries is dropped;
    a dropped entry only costs one ledger round-trip on the next request.
    """

    def __init__(
        self,
        *,
        max_entries: Optional[int] = 10000,
        ttl_seconds: Optional[float] = None,
        clock=time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[CachedIdentity, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def put(self, cookie_value: str, identity: CachedIdentity) -> None:
        with self._lock:
            if (
                self.max_entries
                and cookie_value not in self._entries
                and len(self._entries) >= self.max_entries
            ):
                oldest = sorted(self._entries.items(), key=lambda item: item[1][1])
                evict_count = max(1, self.max_entries // 10)
                for key, _ in oldest[:evict_count]:
                    self._entries.pop(key, None)
                logger.debug("credential_store_evicted", count=evict_count)
            self._entries[cookie_value] = (identity, self._clock())

    def get(self, cookie_value: str) -> Optional[CachedIdentity]:
        with self._lock:
            entry = self._entries.get(cookie_value)
            if entry is None:
                return None
            identity, stored_at = entry
            if self.ttl_seconds is not None and self._clock() - stored_at >= self.ttl_seconds:
                self._entries.pop(cookie_value, None)
                return None
            return identity

    def delete(self, cookie_value: str) -> None:
        with self._lock:
            self._entries.pop(cookie_value, None)

    def evict_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [
                key
                for key, (identity, _) in self._entries.items()
                if identity.user_id == user_id
            ]
            for key in doomed:
                self._entries.pop(key, None)
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def close(self) -> None:
        self.clear()


__all__ = ["CachedIdentity", "CredentialStore", "InMemoryCredentialStore"]
