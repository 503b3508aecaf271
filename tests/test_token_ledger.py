import base64
import hashlib
import string
from datetime import timedelta

import pytest

from latchkey.config import TokenSweepMode
from latchkey.service.errors import RotationConflict, ServerError
from latchkey.service.tokens import (
    SERIES_LENGTH,
    TOKEN_LENGTH,
    TokenLedger,
    ValidationStatus,
    format_cookie_value,
    generate_secret,
    hash_secret,
    parse_cookie_value,
)
from latchkey.storage.models import utcnow

_URLSAFE = set(string.ascii_letters + string.digits + "-_")


@pytest.fixture
def ledger(memory_store):
    return TokenLedger(memory_store, expire_hours=48)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("a@example.com")


def test_generated_secrets_have_fixed_length_and_alphabet():
    series = generate_secret(SERIES_LENGTH)
    token = generate_secret(TOKEN_LENGTH)
    assert len(series) == 10
    assert len(token) == 24
    assert set(series) <= _URLSAFE
    assert set(token) <= _URLSAFE


def test_hash_is_urlsafe_base64_sha256():
    expected = base64.urlsafe_b64encode(hashlib.sha256(b"abc").digest()).decode()
    assert hash_secret("abc") == expected


def test_cookie_value_format_and_parse():
    value = format_cookie_value("u1", "series", "token")
    assert value == "u1 series token"
    assert parse_cookie_value(value) == ("u1", "series", "token")
    assert parse_cookie_value("u1 series") is None
    assert parse_cookie_value("u1  token") is None
    assert parse_cookie_value("a b c d") is None
    assert parse_cookie_value("") is None
    assert parse_cookie_value(None) is None


def test_create_login_stores_only_hashes(ledger, memory_store, user):
    issued = ledger.create_login(user)
    [row] = memory_store.list_login_tokens(user.id)
    assert row.series_hash == hash_secret(issued.series)
    assert row.token_hash == hash_secret(issued.token)
    assert issued.series not in (row.series_hash, row.token_hash)
    assert issued.cookie_value() == f"{user.id} {issued.series} {issued.token}"


def test_repeated_logins_create_independent_lineages(ledger, user):
    first = ledger.create_login(user)
    second = ledger.create_login(user)
    assert first.series != second.series
    assert len(ledger.list_lineages(user.id)) == 2
    assert ledger.validate_login(user.id, first.series, first.token).ok
    assert ledger.validate_login(user.id, second.series, second.token).ok


def test_validate_exact_match(ledger, user):
    issued = ledger.create_login(user)
    result = ledger.validate_login(user.id, issued.series, issued.token)
    assert result.status == ValidationStatus.OK
    assert result.record.id == issued.record.id


def test_validate_unknown_series_is_not_found(ledger, user):
    ledger.create_login(user)
    result = ledger.validate_login(user.id, "unknownser", "x" * 24)
    assert result.status == ValidationStatus.NOT_FOUND
    assert len(ledger.list_lineages(user.id)) == 1


def test_stale_token_deletes_every_lineage(ledger, memory_store, user):
    first = ledger.create_login(user)
    ledger.create_login(user)
    other = memory_store.create_user("b@example.com")
    ledger.create_login(other)

    result = ledger.validate_login(user.id, first.series, "stale-token-value-000000")
    assert result.status == ValidationStatus.INVALID_TOKEN
    assert result.invalidated == 2
    assert ledger.list_lineages(user.id) == []
    assert len(ledger.list_lineages(other.id)) == 1


def test_rotation_keeps_series_and_invalidates_old_token(ledger, user):
    issued = ledger.create_login(user)
    accepted = ledger.validate_login(user.id, issued.series, issued.token)
    new_token, updated = ledger.rotate(accepted.record)

    assert new_token != issued.token
    assert len(new_token) == TOKEN_LENGTH
    assert updated.series_hash == issued.record.series_hash
    assert updated.token_hash == hash_secret(new_token)
    assert updated.token_created_at >= issued.record.token_created_at
    assert ledger.validate_login(user.id, issued.series, new_token).ok


def test_replaying_rotated_token_is_theft(ledger, user):
    issued = ledger.create_login(user)
    record = ledger.validate_login(user.id, issued.series, issued.token).record
    ledger.rotate(record)

    replay = ledger.validate_login(user.id, issued.series, issued.token)
    assert replay.status == ValidationStatus.INVALID_TOKEN
    assert ledger.list_lineages(user.id) == []


def test_concurrent_rotation_loser_raises_conflict(ledger, user):
    issued = ledger.create_login(user)
    record = ledger.validate_login(user.id, issued.series, issued.token).record
    ledger.rotate(record)
    with pytest.raises(RotationConflict):
        ledger.rotate(record)


def test_rotation_storage_failure_is_server_error(memory_store, user):
    class BrokenStore:
        def __getattr__(self, name):
            return getattr(memory_store, name)

        def rotate_login_token(self, *args, **kwargs):
            raise OSError("disk full")

    ledger = TokenLedger(BrokenStore(), expire_hours=48)
    issued = ledger.create_login(user)
    with pytest.raises(ServerError):
        ledger.rotate(issued.record)


def test_sweep_removes_tokens_past_lifetime(ledger, memory_store, user):
    issued = ledger.create_login(user)
    fresh = ledger.create_login(user)

    later = utcnow() + timedelta(hours=47)
    assert ledger.sweep_expired(now=later) == 0

    # Only the first lineage ages out once the second has been rotated
    _, rotated = ledger.rotate(fresh.record)
    memory_store.login_tokens[rotated.id].token_created_at = utcnow() + timedelta(hours=10)
    assert ledger.sweep_expired(now=utcnow() + timedelta(hours=49)) == 1
    remaining = ledger.list_lineages(user.id)
    assert [t.id for t in remaining] == [fresh.record.id]
    assert issued.record.id not in {t.id for t in remaining}


def test_inline_sweep_runs_before_validation(memory_store, user):
    clock_now = [utcnow()]
    ledger = TokenLedger(memory_store, expire_hours=1, clock=lambda: clock_now[0])
    issued = ledger.create_login(user)

    clock_now[0] = clock_now[0] + timedelta(hours=2)
    result = ledger.validate_login(user.id, issued.series, issued.token)
    assert result.status == ValidationStatus.NOT_FOUND
    assert ledger.list_lineages(user.id) == []


def test_background_mode_skips_inline_sweep(memory_store, user):
    clock_now = [utcnow()]
    ledger = TokenLedger(
        memory_store,
        expire_hours=1,
        sweep_mode=TokenSweepMode.BACKGROUND,
        clock=lambda: clock_now[0],
    )
    issued = ledger.create_login(user)

    clock_now[0] = clock_now[0] + timedelta(hours=2)
    assert ledger.validate_login(user.id, issued.series, issued.token).ok
    assert ledger.sweep_expired() == 1


def test_delete_lineage_and_invalidate_user(ledger, user):
    first = ledger.create_login(user)
    ledger.create_login(user)
    assert ledger.delete_lineage(user.id, first.series) == 1
    assert len(ledger.list_lineages(user.id)) == 1
    assert ledger.invalidate_user(user.id) == 1
    assert ledger.list_lineages(user.id) == []


def test_create_login_for_missing_user_is_server_error(ledger, user, memory_store):
    memory_store.delete_user(user.id)
    with pytest.raises(ServerError):
        ledger.create_login(user)
