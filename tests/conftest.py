import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="latchkey_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("CREDENTIAL_STORE_BACKEND", "memory")
os.environ.setdefault("COOKIE_SECURE", "false")

import pytest  # noqa: E402
import structlog  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import latchkey.logging  # noqa: E402,F401
from latchkey.service.passwords import Argon2PasswordVerifier  # noqa: E402
from latchkey.service.runtime import close_runtime, reset_runtime_for_tests  # noqa: E402
from latchkey.storage.memory import MemoryStore  # noqa: E402

# Lets structlog.testing.capture_logs see module-level loggers
structlog.configure(cache_logger_on_first_use=False)


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # A fresh snapshot directory per test keeps memory-store state isolated
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "runtime"))
    reset_runtime_for_tests()
    yield
    close_runtime()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def verifier():
    """Argon2 verifier with cheap parameters so tests stay fast."""
    return Argon2PasswordVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def make_user(memory_store, verifier):
    from latchkey.storage.models import utcnow

    def _make(email="user@example.com", password="CorrectHorse-42", **kwargs):
        password_hash, algo = verifier.hash_password(password)
        confirmed = kwargs.pop("confirmed", True)
        return memory_store.create_user(
            email,
            kwargs.pop("handle", None),
            password_hash=password_hash,
            password_algo=algo,
            confirmed_at=utcnow() if confirmed else None,
            **kwargs,
        )

    return _make
