import pytest
from structlog.testing import capture_logs

from latchkey.service.credential_store import CachedIdentity, InMemoryCredentialStore
from latchkey.service.errors import TOKEN_THEFT_MESSAGE, RejectReason, ServerError
from latchkey.service.remember import RememberStatus, RememberTokenAuthenticator
from latchkey.service.tokens import TokenLedger, ValidationStatus, parse_cookie_value
from latchkey.service.tracking import ActivityTracker


@pytest.fixture
def cache():
    return InMemoryCredentialStore()


@pytest.fixture
def ledger(memory_store):
    return TokenLedger(memory_store, expire_hours=48)


@pytest.fixture
def remember(memory_store, ledger, cache):
    return RememberTokenAuthenticator(
        memory_store,
        ledger,
        cache,
        cookie_name="latchkey_login",
        cookie_max_age=48 * 3600,
    )


@pytest.fixture
def user(make_user):
    return make_user()


def test_scenario_rotation_then_replay_wipes_parallel_lineage(ledger, user):
    parallel = ledger.create_login(user)
    issued = ledger.create_login(user)

    accepted = ledger.validate_login(user.id, issued.series, issued.token)
    assert accepted.status == ValidationStatus.OK
    new_token, _ = ledger.rotate(accepted.record)

    replay = ledger.validate_login(user.id, issued.series, issued.token)
    assert replay.status == ValidationStatus.INVALID_TOKEN
    assert ledger.validate_login(user.id, parallel.series, parallel.token).status == (
        ValidationStatus.NOT_FOUND
    )
    assert ledger.validate_login(user.id, issued.series, new_token).status == (
        ValidationStatus.NOT_FOUND
    )


def test_issue_returns_cookie_directive(remember, user, memory_store):
    directive = remember.issue(user)
    assert directive.name == "latchkey_login"
    assert directive.max_age == 172800
    assert parse_cookie_value(directive.value)[0] == user.id
    assert len(memory_store.list_login_tokens(user.id)) == 1


def test_valid_cookie_rotates_and_updates_cache(remember, user, cache, memory_store):
    cookie = remember.issue(user).value

    result = remember.authenticate(cookie, ip_addr="10.0.0.5", user_agent="pytest")

    assert result.status == RememberStatus.ESTABLISHED
    assert result.from_cache is False
    assert result.user.id == user.id
    assert result.session.remembered is True
    assert memory_store.get_session(result.session.id) is not None

    new_cookie = result.cookie.value
    old_id, old_series, old_token = parse_cookie_value(cookie)
    new_id, new_series, new_token = parse_cookie_value(new_cookie)
    assert (new_id, new_series) == (old_id, old_series)
    assert new_token != old_token

    assert cache.get(cookie) is None
    assert cache.get(new_cookie) == CachedIdentity(user_id=user.id)


def test_cache_hit_skips_ledger_and_rotation(remember, user, cache, memory_store):
    cookie = remember.authenticate(remember.issue(user).value).cookie.value
    [before] = memory_store.list_login_tokens(user.id)

    result = remember.authenticate(cookie)

    assert result.established
    assert result.from_cache is True
    assert result.cookie is None
    [after] = memory_store.list_login_tokens(user.id)
    assert after.token_hash == before.token_hash


def test_cache_miss_falls_back_to_ledger(remember, user, cache):
    cookie = remember.authenticate(remember.issue(user).value).cookie.value
    cache.clear()

    result = remember.authenticate(cookie)
    assert result.established
    assert result.from_cache is False
    assert result.cookie.value != cookie


def test_replayed_cookie_triggers_theft_response(remember, user, cache, memory_store):
    stolen = remember.issue(user).value
    other_device = remember.authenticate(remember.issue(user).value).cookie.value
    remember.authenticate(stolen)

    with capture_logs() as logs:
        result = remember.authenticate(stolen)

    assert result.status == RememberStatus.THEFT_DETECTED
    assert result.reason == RejectReason.TOKEN_THEFT_DETECTED
    assert result.message == TOKEN_THEFT_MESSAGE
    assert result.cookie.clears
    assert memory_store.list_login_tokens(user.id) == []
    # Cached cookies for the user are gone too
    assert cache.get(other_device) is None
    assert not remember.authenticate(other_device).established
    theft = [e for e in logs if e["event"] == "remember_token_theft_detected"]
    assert theft and theft[0]["log_level"] == "warning"


def test_unknown_lineage_is_anonymous_and_clears_cookie(remember, user):
    result = remember.authenticate(f"{user.id} abcdefghij {'x' * 24}")
    assert result.status == RememberStatus.ANONYMOUS
    assert result.reason == RejectReason.TOKEN_NOT_FOUND
    assert result.cookie.clears


@pytest.mark.parametrize("value", ["", "garbage", "one two", "a b c d"])
def test_malformed_cookie_is_anonymous(remember, value):
    result = remember.authenticate(value)
    assert result.status == RememberStatus.ANONYMOUS
    assert result.cookie.clears


def test_deleted_user_is_anonymous(remember, user, memory_store):
    cookie = remember.issue(user).value
    memory_store.delete_user(user.id)
    result = remember.authenticate(cookie)
    assert result.status == RememberStatus.ANONYMOUS


def test_locked_user_cannot_use_cookie(remember, user, memory_store):
    cookie = remember.issue(user).value
    memory_store.update_user(user.id, {"locked_at": user.created_at})
    assert remember.authenticate(cookie).status == RememberStatus.ANONYMOUS


def test_lost_rotation_race_is_anonymous_without_clearing(memory_store, ledger, cache, user):
    class RacingLedger:
        def __getattr__(self, name):
            return getattr(ledger, name)

        def rotate(self, record):
            # Another request rotates first
            ledger.rotate(record)
            return ledger.rotate(record)

    remember = RememberTokenAuthenticator(
        memory_store,
        RacingLedger(),
        cache,
        cookie_name="latchkey_login",
        cookie_max_age=3600,
    )
    cookie = remember.issue(user).value
    result = remember.authenticate(cookie)
    assert result.status == RememberStatus.ANONYMOUS
    assert result.cookie is None
    assert len(memory_store.list_login_tokens(user.id)) == 1


def test_rotation_write_failure_propagates(memory_store, cache, user):
    class BrokenStore:
        def __getattr__(self, name):
            return getattr(memory_store, name)

        def rotate_login_token(self, *args, **kwargs):
            raise OSError("database down")

    broken = BrokenStore()
    remember = RememberTokenAuthenticator(
        broken,
        TokenLedger(broken, expire_hours=48),
        cache,
        cookie_name="latchkey_login",
        cookie_max_age=3600,
    )
    cookie = remember.issue(user).value
    with pytest.raises(ServerError):
        remember.authenticate(cookie)


def test_cache_failures_fall_back_to_ledger(memory_store, ledger, user):
    class DownCache:
        def get(self, value):
            raise ConnectionError("redis down")

        put = delete = evict_user = get

    remember = RememberTokenAuthenticator(
        memory_store, ledger, DownCache(), cookie_name="latchkey_login", cookie_max_age=3600
    )
    result = remember.authenticate(remember.issue(user).value)
    assert result.established


def test_tracking_on_ledger_validated_login(memory_store, ledger, cache, user):
    remember = RememberTokenAuthenticator(
        memory_store,
        ledger,
        cache,
        cookie_name="latchkey_login",
        cookie_max_age=3600,
        tracker=ActivityTracker(memory_store),
    )
    remember.authenticate(remember.issue(user).value, ip_addr="10.0.0.7")
    stored = memory_store.get_user(user.id)
    assert stored.sign_in_count == 1
    assert stored.current_sign_in_ip == "10.0.0.7"


def test_logout_removes_all_lineages_and_cache_entry(remember, user, cache, memory_store):
    cookie = remember.authenticate(remember.issue(user).value).cookie.value
    remember.issue(user)

    directive = remember.logout(user, cookie)

    assert directive.clears
    assert directive.name == "latchkey_login"
    assert memory_store.list_login_tokens(user.id) == []
    assert cache.get(cookie) is None


def test_identify_has_no_sign_in_side_effects(memory_store, ledger, cache, user):
    remember = RememberTokenAuthenticator(
        memory_store,
        ledger,
        cache,
        cookie_name="latchkey_login",
        cookie_max_age=3600,
        tracker=ActivityTracker(memory_store),
    )
    cookie = remember.issue(user).value
    [before] = memory_store.list_login_tokens(user.id)

    assert remember.identify(cookie).id == user.id

    [after] = memory_store.list_login_tokens(user.id)
    assert after.token_hash == before.token_hash
    assert memory_store.get_user(user.id).sign_in_count == 0
    assert [s for s in memory_store.sessions.values() if s.user_id == user.id] == []


def test_identify_rejects_malformed_and_replayed_cookies(remember, user, memory_store):
    assert remember.identify("garbage") is None
    stolen = remember.issue(user).value
    remember.authenticate(stolen)

    assert remember.identify(stolen) is None
    assert memory_store.list_login_tokens(user.id) == []
