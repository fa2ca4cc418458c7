from huddle.logging import _redact_pii, get_correlation_id, mask_email, set_correlation_id


def test_email_keeps_domain():
    assert mask_email("alice@example.com") == "al***@example.com"
    assert mask_email("not-an-email") == "***"


def test_credentials_are_masked():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "user_logged_in",
            "password": "CorrectHorse9",
            "refresh_token": "abcdefghijkl",
            "email": "bob@example.com",
            "code": "1234",
            "user_id": "u-1",
            "error_code": "unauthorized",
        },
    )
    assert event["event"] == "user_logged_in"
    assert event["password"] == "Co***e9"
    assert event["refresh_token"] == "ab***kl"
    assert event["email"] == "bo***@example.com"
    assert event["code"] == "***"
    assert event["user_id"] == "u-1"
    assert event["error_code"] == "unauthorized"


def test_correlation_id_adopted_or_generated():
    assert set_correlation_id("req-1") == "req-1"
    assert get_correlation_id() == "req-1"
    generated = set_correlation_id()
    assert generated and generated != "req-1"
