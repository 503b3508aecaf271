from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from latchkey.storage.models import PersistentLoginToken, Session, User


class AuthStore(Protocol):
    """Persistence the authentication core needs.

    Implemented by ``MemoryStore`` and ``PostgresStore``; every mutating call
    is atomic per row.
    """

    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def get_user_by_login(self, login_field: str, value: str) -> Optional[User]:
        ...

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        ...

    def record_failed_login(
        self, user_id: str, threshold: int, now: Optional[datetime] = None
    ) -> Optional[User]:
        ...

    def reset_failed_attempts(self, user_id: str) -> Optional[User]:
        ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        remembered: bool = False,
        meta: Optional[dict] = None,
    ) -> Session:
        ...

    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    def revoke_session(self, session_id: str) -> None:
        ...

    def revoke_user_sessions(self, user_id: str) -> None:
        ...

    def insert_login_token(self, record: PersistentLoginToken) -> PersistentLoginToken:
        ...

    def get_login_token(
        self, user_id: str, series_hash: str, token_hash: str
    ) -> Optional[PersistentLoginToken]:
        ...

    def count_mismatched_login_tokens(
        self, user_id: str, series_hash: str, token_hash: str
    ) -> int:
        ...

    def rotate_login_token(
        self,
        token_id: str,
        expected_token_hash: str,
        new_token_hash: str,
        now: Optional[datetime] = None,
    ) -> Optional[PersistentLoginToken]:
        ...

    def list_login_tokens(self, user_id: str) -> List[PersistentLoginToken]:
        ...

    def delete_login_tokens_for_user(self, user_id: str) -> int:
        ...

    def delete_login_token(self, user_id: str, series_hash: str) -> int:
        ...

    def delete_login_tokens_older_than(self, cutoff: datetime) -> int:
        ...


__all__ = ["AuthStore"]
