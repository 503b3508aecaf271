from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from latchkey.config import (
    CredentialStoreBackend,
    Settings,
    get_settings,
    reset_settings_cache,
)
from latchkey.logging import get_logger
from latchkey.service.credential_store import CredentialStore, InMemoryCredentialStore
from latchkey.service.lockout import LockoutPolicy
from latchkey.service.passwords import Argon2PasswordVerifier
from latchkey.service.remember import RememberTokenAuthenticator
from latchkey.service.session import SessionAuthenticator
from latchkey.service.tokens import TokenLedger
from latchkey.service.tracking import ActivityTracker
from latchkey.storage.memory import MemoryStore
from latchkey.storage.postgres import PostgresStore
from latchkey.storage.redis_cache import RedisCredentialStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store, caches and authenticators for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.features = self.settings.features()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            features=self.features.__dict__,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.credential_store = self._build_credential_store()
        self.verifier = Argon2PasswordVerifier()
        self.ledger = TokenLedger(
            self.store,
            expire_hours=self.settings.rememberable_cookie_expire_hours,
            sweep_mode=self.settings.token_sweep_mode,
        )
        self.lockout = LockoutPolicy(
            self.store, max_attempts=self.settings.max_failed_login_attempts
        )
        self.tracker = ActivityTracker(self.store)
        self.remember = RememberTokenAuthenticator(
            self.store,
            self.ledger,
            self.credential_store,
            cookie_name=self.settings.login_cookie_name,
            cookie_max_age=self.settings.login_cookie_max_age,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            tracker=self.tracker if self.features.trackable else None,
            lockable=self.features.lockable,
        )
        self.authenticator = SessionAuthenticator(
            self.store,
            features=self.features,
            login_field=self.settings.login_field,
            session_ttl_minutes=self.settings.session_ttl_minutes,
            verifier=self.verifier,
            lockout=self.lockout,
            tracker=self.tracker,
            remember=self.remember,
        )

    def _build_credential_store(self) -> CredentialStore:
        backend = self.settings.credential_store_backend
        if backend == CredentialStoreBackend.REDIS:
            try:
                store = RedisCredentialStore(
                    self.settings.redis_url,
                    ttl_seconds=self.settings.login_cookie_max_age,
                )
                store.verify_connection()
                logger.info("credential_store_initialized", backend=backend.value)
                return store
            except Exception as exc:
                logger.error(
                    "credential_store_init_failed",
                    backend=backend.value,
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                )
                raise
        logger.info("credential_store_initialized", backend=backend.value)
        return InMemoryCredentialStore(
            max_entries=self.settings.credential_store_max_entries,
            ttl_seconds=self.settings.login_cookie_max_age,
        )

    def close(self) -> None:
        self.credential_store.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def close_runtime() -> None:
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
            runtime = None


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = [
    "Runtime",
    "get_runtime",
    "close_runtime",
    "reset_runtime_for_tests",
]
