import pytest
from pydantic import ValidationError

from credvault.config import Settings, get_settings, reset_settings_cache
from credvault.logging import (
    _redact_pii,
    get_correlation_id,
    redact_value,
    set_correlation_id,
)

SECRET = "x" * 40


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        Settings(jwt_secret="too-short")


def test_missing_jwt_secret_is_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(jwt_secret=None)
    second = Settings(jwt_secret=None)

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_cors_origins_split_from_string():
    settings = Settings(
        jwt_secret=SECRET, cors_allow_origins="https://a.example, https://b.example,,"
    )
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("JWT_AUDIENCE", "mobile-app")
    monkeypatch.setenv("REFRESH_REUSE_REVOKES_FAMILY", "true")
    monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "3")

    settings = Settings.from_env()

    assert settings.jwt_audience == "mobile-app"
    assert settings.refresh_reuse_revokes_family is True
    assert settings.login_rate_limit_per_minute == 3


def test_settings_are_frozen():
    settings = Settings(jwt_secret=SECRET)
    with pytest.raises(ValidationError):
        settings.jwt_issuer = "other"


def test_settings_cache_resets(monkeypatch):
    reset_settings_cache()
    monkeypatch.setenv("JWT_ISSUER", "first-issuer")
    assert get_settings().jwt_issuer == "first-issuer"

    monkeypatch.setenv("JWT_ISSUER", "second-issuer")
    assert get_settings().jwt_issuer == "first-issuer"
    reset_settings_cache()
    assert get_settings().jwt_issuer == "second-issuer"
    reset_settings_cache()


def test_redact_value_masks_middle():
    assert redact_value("abc") == "***"
    assert redact_value("ada@example.com") == "ad***om"


def test_credentials_and_contacts_redacted():
    event = _redact_pii(
        None,
        "info",
        {
            "event": "otp_sent",
            "phone": "+15551234567",
            "email": "ada@example.com",
            "code": "123456",
            "refresh_token": "abcdefghijkl",
            "token_prefix": "abcdefgh",
            "token_id": 7,
            "user_id": 42,
        },
    )

    assert event["event"] == "otp_sent"
    assert event["phone"] == "+1***67"
    assert event["email"] == "ad***om"
    assert event["code"] == "12***56"
    assert event["refresh_token"] == "ab***kl"
    assert event["token_prefix"] == "abcdefgh"
    assert event["token_id"] == 7
    assert event["user_id"] == 42


def test_correlation_id_round_trip():
    cid = set_correlation_id("req-123")
    assert cid == "req-123"
    assert get_correlation_id() == "req-123"
    assert set_correlation_id() != "req-123"
