import structlog

from latchkey.logging import _redact_pii, _renderers, get_correlation_id, set_correlation_id


def test_redacts_credentials_and_pii():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "login_failed",
            "email": "someone@example.com",
            "password": "CorrectHorse-42",
            "cookie_value": "u1 series token",
            "user_id": "user-123456",
        },
    )
    assert event["email"] == "so***om"
    assert event["password"] == "Co***42"
    assert event["cookie_value"] == "u1***en"
    assert event["user_id"] == "user-123456"


def test_hashes_and_short_values_pass_through():
    event = _redact_pii(None, "info", {"token_hash": "abcdefgh", "token": "abc"})
    assert event == {"token_hash": "abcdefgh", "token": "abc"}


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()
    assert cid
    assert get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"


def test_renderer_follows_output_mode():
    assert isinstance(_renderers(True)[-1], structlog.dev.ConsoleRenderer)
    assert isinstance(_renderers(False)[-1], structlog.processors.JSONRenderer)
