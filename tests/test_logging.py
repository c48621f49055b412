from notehub.logging import (
    _redact_sensitive,
    get_correlation_id,
    redact_email,
    sanitize_error_message,
    set_correlation_id,
)


def test_redacts_credential_fields():
    event = _redact_sensitive(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "Secret@123",
            "token_hash": "a" * 64,
            "email": "alice@example.com",
            "user_id": "user-1",
        },
    )
    assert event["password"] == "Se***23"
    assert event["token_hash"].startswith("aa***")
    assert event["email"] == "a***@example.com"
    assert event["user_id"] == "user-1"
    assert event["event"] == "login_failed"


def test_short_secret_fully_masked():
    assert _redact_sensitive(None, "info", {"secret": "abc"})["secret"] == "***"


def test_redact_email_without_domain():
    assert redact_email("not-an-address") == "***"


def test_sanitize_error_message_strips_paths_and_credentials():
    cleaned = sanitize_error_message("open /var/lib/notehub/state failed, password=hunter2")
    assert "/var/lib" not in cleaned
    assert "hunter2" not in cleaned
    assert sanitize_error_message("") == "An error occurred"


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id()
    assert get_correlation_id() == cid
    assert set_correlation_id("req-42") == "req-42"
