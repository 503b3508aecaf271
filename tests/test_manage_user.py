import importlib.util
from pathlib import Path

import pytest

from latchkey.service.errors import ConflictError, NotFoundError
from latchkey.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "manage_user.py"


@pytest.fixture(scope="module")
def manage_user():
    spec = importlib.util.spec_from_file_location("manage_user", _SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _run(manage_user, *argv):
    args = manage_user.build_parser().parse_args(list(argv))
    return manage_user.run(args, get_runtime())


@pytest.mark.parametrize(
    "password,ok",
    [
        ("Secure-Passw0rd", True),
        ("alllowercaseletters", False),
        ("Short-1", False),
        ("lowercase-and-digits-123", True),
    ],
)
def test_validate_password(manage_user, password, ok):
    assert manage_user.validate_password(password) is ok


def test_create_confirm_and_status(manage_user):
    created = _run(manage_user, "create", "--email", "cli@example.com", "--password", "Secure-Passw0rd")
    assert created["status"] == "created"
    assert created["confirmed_at"] is None

    confirmed = _run(manage_user, "confirm", "--email", "cli@example.com")
    assert confirmed["status"] == "confirmed"
    assert _run(manage_user, "confirm", "--email", "cli@example.com")["status"] == "already_confirmed"

    status = _run(manage_user, "status", "--email", "cli@example.com")
    assert status["failed_attempts"] == 0
    assert status["locked_at"] is None
    assert status["remembered_logins"] == 0


def test_lock_revokes_sessions_and_remembered_logins(manage_user):
    _run(manage_user, "create", "--email", "cli@example.com", "--password", "Secure-Passw0rd", "--confirmed")
    runtime = get_runtime()
    user = runtime.store.get_user_by_email("cli@example.com")
    runtime.ledger.create_login(user)
    session = runtime.store.create_session(user.id)
    runtime.store.update_user(user.id, {"failed_attempts": 2})

    locked = _run(manage_user, "lock", "--email", "cli@example.com")
    assert locked["locked_at"] is not None
    assert runtime.ledger.list_lineages(user.id) == []
    assert runtime.store.get_session(session.id) is None
    with pytest.raises(ConflictError):
        _run(manage_user, "lock", "--email", "cli@example.com")

    unlocked = _run(manage_user, "unlock", "--email", "cli@example.com")
    assert unlocked["locked_at"] is None
    assert unlocked["failed_attempts"] == 0


def test_unknown_email_is_not_found(manage_user):
    with pytest.raises(NotFoundError):
        _run(manage_user, "status", "--email", "missing@example.com")


def test_sweep_reports_removed_count(manage_user):
    assert _run(manage_user, "sweep") == {"status": "swept", "removed": 0}


def test_main_rejects_weak_password(manage_user, capsys):
    with pytest.raises(SystemExit) as exc:
        manage_user.main(["create", "--email", "cli@example.com", "--password", "weak"])
    assert exc.value.code == 1
    assert "at least 12 characters" in capsys.readouterr().out
