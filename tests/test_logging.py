from murmur.logging import _redact_pii, get_correlation_id, set_correlation_id


def test_redacts_sensitive_keys():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "signin_failed",
            "email": "alice@example.com",
            "refresh_token": "eyJhbGciOiJIUzI1NiJ9.payload.sig",
            "otp": "abc",
            "user_id": "1234-5678",
        },
    )
    assert event["event"] == "signin_failed"
    assert event["email"] == "al***om"
    assert event["refresh_token"].startswith("ey***")
    assert event["otp"] == "***"
    assert event["user_id"] == "1234-5678"


def test_correlation_id_generated_or_kept():
    assert set_correlation_id("req-1") == "req-1"
    assert get_correlation_id() == "req-1"
    generated = set_correlation_id()
    assert generated != "req-1"
    assert get_correlation_id() == generated


def test_only_exact_sensitive_keys_are_redacted():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "access_token_refreshed",
            "token_type": "access",
            "email_verified": "true-ish",
            "to_email": "bob@example.com",
        },
    )
    assert event["token_type"] == "access"
    assert event["email_verified"] == "true-ish"
    assert event["to_email"] == "bo***om"
