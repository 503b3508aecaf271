from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from latchkey.logging import get_logger
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import (
    USER_MUTABLE_FIELDS,
    PersistentLoginToken,
    Session,
    User,
    utcnow,
)


_MAX_SESSION_CACHE_SIZE = 10000

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        handle TEXT UNIQUE,
        password_hash TEXT,
        password_algo TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        confirmed_at TIMESTAMPTZ,
        failed_attempts INTEGER NOT NULL DEFAULT 0,
        locked_at TIMESTAMPTZ,
        sign_in_count INTEGER NOT NULL DEFAULT 0,
        current_sign_in_at TIMESTAMPTZ,
        current_sign_in_ip TEXT,
        last_sign_in_at TIMESTAMPTZ,
        last_sign_in_ip TEXT,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT,
        remembered BOOLEAN NOT NULL DEFAULT FALSE,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS persistent_login (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        series_hash TEXT NOT NULL,
        token_hash TEXT NOT NULL,
        token_created_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, series_hash)
    )
    """,
    "CREATE INDEX IF NOT EXISTS persistent_login_created_idx ON persistent_login (token_created_at)",
)


class PostgresStore:
    """Postgres-backed store for users, sessions and persistent-login tokens.

    Counter and token updates are single statements so concurrent requests
    for the same user or lineage cannot lose writes.
    """

    def __init__(self, dsn: str, *, ensure_schema: bool = True) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.sessions: dict[str, Session] = {}
        self._session_lock = threading.Lock()
        if ensure_schema:
            self._ensure_schema()

    def close(self) -> None:
        self.pool.close()

    def _cache_session(self, session: Session) -> Session:
        """Store session in the in-memory cache and return it."""
        with self._session_lock:
            # Evict soonest-to-expire entries if cache is at capacity
            if len(self.sessions) >= _MAX_SESSION_CACHE_SIZE:
                sorted_sessions = sorted(
                    self.sessions.values(), key=lambda s: s.expires_at
                )
                evict_count = max(1, _MAX_SESSION_CACHE_SIZE // 10)
                for old_session in sorted_sessions[:evict_count]:
                    self.sessions.pop(old_session.id, None)

            self.sessions[session.id] = session
            return session

    def _evict_session(self, session_id: str) -> None:
        with self._session_lock:
            self.sessions.pop(session_id, None)

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            handle=row.get("handle"),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
            confirmed_at=row.get("confirmed_at"),
            failed_attempts=row.get("failed_attempts") or 0,
            locked_at=row.get("locked_at"),
            sign_in_count=row.get("sign_in_count") or 0,
            current_sign_in_at=row.get("current_sign_in_at"),
            current_sign_in_ip=row.get("current_sign_in_ip"),
            last_sign_in_at=row.get("last_sign_in_at"),
            last_sign_in_ip=row.get("last_sign_in_ip"),
            meta=row.get("meta"),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> PersistentLoginToken:
        return PersistentLoginToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            series_hash=row["series_hash"],
            token_hash=row["token_hash"],
            token_created_at=row["token_created_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
            remembered=bool(row.get("remembered", False)),
            meta=row.get("meta"),
        )

    # users
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        confirmed_at: Optional[datetime] = None,
        is_active: bool = True,
        meta: Optional[dict] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, handle, password_hash, password_algo, confirmed_at, is_active, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email,
                        handle,
                        password_hash,
                        password_algo,
                        confirmed_at,
                        is_active,
                        json.dumps(meta) if meta else None,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email or handle already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.get_user_by_login("email", email)

    def get_user_by_login(self, login_field: str, value: str) -> Optional[User]:
        if login_field not in {"email", "handle"}:
            raise ValueError(f"unsupported login field: {login_field}")
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM app_user WHERE {login_field} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        unknown = set(changes) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        if not changes:
            return self.get_user(user_id)
        # Column names come from USER_MUTABLE_FIELDS only
        names = sorted(changes)
        assignments = ", ".join(f"{name} = %s" for name in names)
        values = [
            json.dumps(changes[name]) if name == "meta" and changes[name] is not None
            else changes[name]
            for name in names
        ]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    (*values, user_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("handle already exists", {"field": "handle"})
        return self._user_from_row(row) if row else None

    def record_failed_login(
        self, user_id: str, threshold: int, now: Optional[datetime] = None
    ) -> Optional[User]:
        # SET expressions see the pre-update row, hence failed_attempts + 1
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET failed_attempts = failed_attempts + 1,
                    locked_at = CASE
                        WHEN locked_at IS NULL AND failed_attempts + 1 >= %s THEN %s
                        ELSE locked_at
                    END
                WHERE id = %s
                RETURNING *
                """,
                (threshold, now or utcnow(), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def reset_failed_attempts(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET failed_attempts = 0
                WHERE id = %s AND failed_attempts > 0
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        if row:
            return self._user_from_row(row)
        return self.get_user(user_id)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            deleted = result.rowcount > 0
        with self._session_lock:
            stale_ids = [
                sid for sid, sess in self.sessions.items() if sess.user_id == user_id
            ]
            for sid in stale_ids:
                self.sessions.pop(sid, None)
        return deleted

    # sessions
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
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
            remembered=remembered,
            meta=meta,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr, remembered, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                        remembered,
                        json.dumps(meta) if meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        return self._cache_session(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._session_lock:
            cached = self.sessions.get(session_id)
        if cached:
            return cached
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return self._cache_session(self._session_from_row(row))

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
        self._evict_session(session_id)

    def revoke_user_sessions(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
        with self._session_lock:
            stale_ids = [
                sid for sid, sess in self.sessions.items() if sess.user_id == user_id
            ]
            for sid in stale_ids:
                self.sessions.pop(sid, None)

    # persistent login tokens
    def insert_login_token(self, record: PersistentLoginToken) -> PersistentLoginToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO persistent_login (id, user_id, series_hash, token_hash, token_created_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.series_hash,
                        record.token_hash,
                        record.token_created_at,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "login series already exists",
                {"user_id": record.user_id, "reason": "series_exists"},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "login token user missing",
                {"user_id": record.user_id, "reason": "user_missing"},
            )
        return record

    def get_login_token(
        self, user_id: str, series_hash: str, token_hash: str
    ) -> Optional[PersistentLoginToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM persistent_login
                WHERE user_id = %s AND series_hash = %s AND token_hash = %s
                """,
                (user_id, series_hash, token_hash),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def count_mismatched_login_tokens(
        self, user_id: str, series_hash: str, token_hash: str
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT count(id) AS mismatched FROM persistent_login
                WHERE user_id = %s AND series_hash = %s AND token_hash <> %s
                """,
                (user_id, series_hash, token_hash),
            ).fetchone()
        return int(row["mismatched"]) if row else 0

    def rotate_login_token(
        self,
        token_id: str,
        expected_token_hash: str,
        new_token_hash: str,
        now: Optional[datetime] = None,
    ) -> Optional[PersistentLoginToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE persistent_login
                SET token_hash = %s, token_created_at = %s
                WHERE id = %s AND token_hash = %s
                RETURNING *
                """,
                (new_token_hash, now or utcnow(), token_id, expected_token_hash),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def list_login_tokens(self, user_id: str) -> List[PersistentLoginToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM persistent_login WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._token_from_row(row) for row in rows]

    def delete_login_tokens_for_user(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM persistent_login WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    def delete_login_token(self, user_id: str, series_hash: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM persistent_login WHERE user_id = %s AND series_hash = %s",
                (user_id, series_hash),
            )
            return result.rowcount

    def delete_login_tokens_older_than(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM persistent_login WHERE token_created_at < %s", (cutoff,)
            )
            return result.rowcount
