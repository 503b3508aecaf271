import pytest
from structlog.testing import capture_logs

from latchkey.service.errors import ConflictError, ServerError
from latchkey.service.lockout import LockoutPolicy


@pytest.fixture
def policy(memory_store):
    return LockoutPolicy(memory_store, max_attempts=3)


def test_counter_increments_until_threshold_then_locks(policy, memory_store):
    user = memory_store.create_user("a@example.com")

    first = policy.record_failure(user)
    assert first.user.failed_attempts == 1
    assert not first.just_locked

    second = policy.record_failure(first.user)
    assert second.user.failed_attempts == 2
    assert not second.locked

    third = policy.record_failure(second.user)
    assert third.just_locked
    assert third.locked
    assert policy.is_locked(memory_store.get_user(user.id))


def test_failures_after_lock_do_not_relock(policy, memory_store):
    user = memory_store.create_user("a@example.com")
    for _ in range(3):
        update = policy.record_failure(memory_store.get_user(user.id))
    locked_at = update.user.locked_at

    again = policy.record_failure(memory_store.get_user(user.id))
    assert not again.just_locked
    assert again.user.locked_at == locked_at
    assert again.user.failed_attempts == 4


def test_threshold_of_one_locks_on_first_failure(memory_store):
    policy = LockoutPolicy(memory_store, max_attempts=1)
    user = memory_store.create_user("a@example.com")
    assert policy.record_failure(user).just_locked


def test_account_locked_event_logged(policy, memory_store):
    user = memory_store.create_user("a@example.com")
    with capture_logs() as logs:
        for _ in range(3):
            policy.record_failure(memory_store.get_user(user.id))
    events = [entry["event"] for entry in logs]
    assert events.count("account_locked") == 1


def test_success_resets_counter_but_not_lock(policy, memory_store):
    user = memory_store.create_user("a@example.com")
    policy.record_failure(user)
    policy.record_failure(memory_store.get_user(user.id))

    reset = policy.record_success(memory_store.get_user(user.id))
    assert reset.failed_attempts == 0

    for _ in range(3):
        policy.record_failure(memory_store.get_user(user.id))
    locked = memory_store.get_user(user.id)
    after = policy.record_success(locked)
    assert after.failed_attempts == 0
    assert after.locked_at == locked.locked_at


def test_success_with_zero_attempts_skips_write(memory_store):
    class CountingStore:
        def __init__(self):
            self.resets = 0

        def reset_failed_attempts(self, user_id):
            self.resets += 1

    store = CountingStore()
    policy = LockoutPolicy(store, max_attempts=3)
    user = memory_store.create_user("a@example.com")
    assert policy.record_success(user) is user
    assert store.resets == 0


def test_failure_write_error_is_swallowed_and_still_fails_closed(memory_store):
    class BrokenStore:
        def record_failed_login(self, *args, **kwargs):
            raise OSError("database down")

    policy = LockoutPolicy(BrokenStore(), max_attempts=2)
    user = memory_store.create_user("a@example.com")
    memory_store.update_user(user.id, {"failed_attempts": 1})
    user = memory_store.get_user(user.id)

    with capture_logs() as logs:
        update = policy.record_failure(user)
    assert update.just_locked
    assert update.user.failed_attempts == 2
    assert any(e["event"] == "lockout_update_failed" for e in logs)


def test_admin_lock_and_unlock(policy, memory_store):
    user = memory_store.create_user("a@example.com")
    with pytest.raises(ConflictError, match="not locked"):
        policy.unlock(user)

    locked = policy.lock(user)
    assert policy.is_locked(locked)
    with pytest.raises(ConflictError, match="already locked"):
        policy.lock(locked)

    memory_store.update_user(user.id, {"failed_attempts": 7})
    unlocked = policy.unlock(memory_store.get_user(user.id))
    assert unlocked.locked_at is None
    assert unlocked.failed_attempts == 0


def test_admin_lock_write_failure_surfaces(memory_store):
    class BrokenStore:
        def update_user(self, *args, **kwargs):
            raise OSError("database down")

    policy = LockoutPolicy(BrokenStore(), max_attempts=3)
    user = memory_store.create_user("a@example.com")
    with pytest.raises(ServerError):
        policy.lock(user)


def test_invalid_threshold_rejected(memory_store):
    with pytest.raises(ValueError):
        LockoutPolicy(memory_store, max_attempts=0)
