from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, fields, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from latchkey.logging import get_logger
from latchkey.storage.errors import ConstraintViolation, PersistenceError
from latchkey.storage.models import (
    USER_MUTABLE_FIELDS,
    PersistentLoginToken,
    Session,
    User,
    utcnow,
)

_USER_DATETIME_FIELDS = (
    "created_at",
    "confirmed_at",
    "locked_at",
    "current_sign_in_at",
    "last_sign_in_at",
)


class MemoryStore:
    """In-memory backing store persisted to a JSON snapshot under ``fs_root``.

    Every mutation runs under a single re-entrant lock, which gives the
    per-row atomic read-modify-write behaviour the authenticators rely on.
    Records handed out are copies; callers never alias stored state.
    """

    def __init__(self, fs_root: str = "/tmp/latchkey") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        self.login_tokens: Dict[str, PersistentLoginToken] = {}
        # RLock so helpers can be called from inside locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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
        meta: Optional[Dict] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if handle and any(
                existing.handle == handle for existing in self.users.values()
            ):
                raise ConstraintViolation("handle already exists", {"field": "handle"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                handle=handle,
                password_hash=password_hash,
                password_algo=password_algo,
                confirmed_at=confirmed_at,
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.get_user_by_login("email", email)

    def get_user_by_login(self, login_field: str, value: str) -> Optional[User]:
        if login_field not in {"email", "handle"}:
            raise ValueError(f"unsupported login field: {login_field}")
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if getattr(u, login_field) == value),
                None,
            )
            return replace(user) if user else None

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> Optional[User]:
        unknown = set(changes) - USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if changes.get("handle") and any(
                other.handle == changes["handle"] and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation("handle already exists", {"field": "handle"})
            for name, value in changes.items():
                setattr(user, name, value)
            self._persist_state()
            return replace(user)

    def record_failed_login(
        self, user_id: str, threshold: int, now: Optional[datetime] = None
    ) -> Optional[User]:
        """Increment the failure counter and lock once it reaches ``threshold``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_attempts += 1
            if user.failed_attempts >= threshold and user.locked_at is None:
                user.locked_at = now or utcnow()
            self._persist_state()
            return replace(user)

    def reset_failed_attempts(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if user.failed_attempts:
                user.failed_attempts = 0
                self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            for token_id, token in list(self.login_tokens.items()):
                if token.user_id == user_id:
                    self.login_tokens.pop(token_id, None)
            self._persist_state()
            return True

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        remembered: bool = False,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                remembered=remembered,
                meta=meta,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None):
                self._persist_state()

    def revoke_user_sessions(self, user_id: str) -> None:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()

    # persistent login tokens
    def insert_login_token(self, record: PersistentLoginToken) -> PersistentLoginToken:
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation(
                    "login token user missing",
                    {"user_id": record.user_id, "reason": "user_missing"},
                )
            if any(
                t.user_id == record.user_id and t.series_hash == record.series_hash
                for t in self.login_tokens.values()
            ):
                raise ConstraintViolation(
                    "login series already exists",
                    {"user_id": record.user_id, "reason": "series_exists"},
                )
            self.login_tokens[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def get_login_token(
        self, user_id: str, series_hash: str, token_hash: str
    ) -> Optional[PersistentLoginToken]:
        with self._data_lock:
            found = next(
                (
                    t
                    for t in self.login_tokens.values()
                    if t.user_id == user_id
                    and t.series_hash == series_hash
                    and t.token_hash == token_hash
                ),
                None,
            )
            return replace(found) if found else None

    def count_mismatched_login_tokens(
        self, user_id: str, series_hash: str, token_hash: str
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for t in self.login_tokens.values()
                if t.user_id == user_id
                and t.series_hash == series_hash
                and t.token_hash != token_hash
            )

    def rotate_login_token(
        self,
        token_id: str,
        expected_token_hash: str,
        new_token_hash: str,
        now: Optional[datetime] = None,
    ) -> Optional[PersistentLoginToken]:
        """Swap the token hash if it still equals ``expected_token_hash``."""
        with self._data_lock:
            record = self.login_tokens.get(token_id)
            if not record or record.token_hash != expected_token_hash:
                return None
            record.token_hash = new_token_hash
            record.token_created_at = now or utcnow()
            self._persist_state()
            return replace(record)

    def list_login_tokens(self, user_id: str) -> List[PersistentLoginToken]:
        with self._data_lock:
            return [
                replace(t) for t in self.login_tokens.values() if t.user_id == user_id
            ]

    def delete_login_tokens_for_user(self, user_id: str) -> int:
        with self._data_lock:
            return self._delete_tokens_where(lambda t: t.user_id == user_id)

    def delete_login_token(self, user_id: str, series_hash: str) -> int:
        with self._data_lock:
            return self._delete_tokens_where(
                lambda t: t.user_id == user_id and t.series_hash == series_hash
            )

    def delete_login_tokens_older_than(self, cutoff: datetime) -> int:
        with self._data_lock:
            return self._delete_tokens_where(lambda t: t.token_created_at < cutoff)

    def _delete_tokens_where(self, predicate) -> int:
        doomed = [tid for tid, t in self.login_tokens.items() if predicate(t)]
        for tid in doomed:
            self.login_tokens.pop(tid, None)
        if doomed:
            self._persist_state()
        return len(doomed)

    # snapshot persistence
    def _serialize_user(self, user: User) -> dict:
        data = asdict(user)
        for name in _USER_DATETIME_FIELDS:
            data[name] = self._serialize_datetime(getattr(user, name))
        return data

    def _deserialize_user(self, data: dict) -> User:
        known = {f.name for f in fields(User)}
        payload = {k: v for k, v in data.items() if k in known}
        for name in _USER_DATETIME_FIELDS:
            payload[name] = self._deserialize_datetime(payload.get(name))
        if payload.get("created_at") is None:
            payload["created_at"] = utcnow()
        return User(**payload)

    def _serialize_session(self, session: Session) -> dict:
        data = asdict(session)
        data["created_at"] = self._serialize_datetime(session.created_at)
        data["expires_at"] = self._serialize_datetime(session.expires_at)
        return data

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
            remembered=bool(data.get("remembered", False)),
            meta=data.get("meta"),
        )

    def _serialize_login_token(self, token: PersistentLoginToken) -> dict:
        data = asdict(token)
        data["token_created_at"] = self._serialize_datetime(token.token_created_at)
        data["created_at"] = self._serialize_datetime(token.created_at)
        return data

    def _deserialize_login_token(self, data: dict) -> PersistentLoginToken:
        return PersistentLoginToken(
            id=data["id"],
            user_id=data["user_id"],
            series_hash=data["series_hash"],
            token_hash=data["token_hash"],
            token_created_at=self._deserialize_datetime(data["token_created_at"]),
            created_at=self._deserialize_datetime(data.get("created_at"))
            or utcnow(),
        )

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "login_tokens": [
                self._serialize_login_token(t) for t in self.login_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise PersistenceError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.login_tokens = {
            t["id"]: self._deserialize_login_token(t)
            for t in data.get("login_tokens", [])
        }
        self.logger.debug(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            login_tokens=len(self.login_tokens),
        )
        return True
