import uuid

from credkeep.logging import _redact_credentials, get_correlation_id, set_correlation_id


def test_credentials_are_fully_masked():
    event = _redact_credentials(
        None,
        "info",
        {
            "event": "login_failed",
            "password": "hunter2hunter2",
            "refresh_token": "abcdefghijklmnop",
            "tfa_code": "123456",
            "user_id": "u-1",
            "attempts": 3,
        },
    )

    assert event["password"] == "***"
    assert event["refresh_token"] == "***"
    assert event["tfa_code"] == "***"
    assert event["user_id"] == "u-1"
    assert event["attempts"] == 3
    assert event["event"] == "login_failed"


def test_email_keeps_domain():
    event = _redact_credentials(None, "info", {"event": "x", "email": "alice@example.com"})

    assert event["email"] == "al***@example.com"


def test_correlation_id_is_kept_when_well_formed():
    assert set_correlation_id("req-123") == "req-123"
    assert get_correlation_id() == "req-123"


def test_correlation_id_rejects_header_injection():
    cid = set_correlation_id("bad id\r\nX-Evil: 1")

    assert cid != "bad id\r\nX-Evil: 1"
    assert str(uuid.UUID(cid)) == cid
