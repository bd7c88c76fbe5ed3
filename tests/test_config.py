import pytest
from pydantic import ValidationError

from murmur.config import Settings, get_settings, reset_settings_cache


def test_from_env_reads_overrides(monkeypatch, tmp_path):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
    monkeypatch.setenv("MESSAGE_RATE_LIMIT", "3")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    settings = Settings.from_env()
    assert settings.message_rate_limit == 3
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]


def test_defaults(tmp_path):
    settings = Settings(
        shared_fs_root=str(tmp_path),
        jwt_access_secret="a-secret",
        jwt_refresh_secret="r-secret",
    )
    assert settings.message_rate_limit == 10
    assert settings.message_rate_window_seconds == 3600
    assert settings.otp_ttl_minutes == 10
    assert settings.jwt_leeway_seconds == 0


def test_blank_redis_url_disables_cache(tmp_path):
    settings = Settings(
        shared_fs_root=str(tmp_path),
        jwt_access_secret="a-secret",
        jwt_refresh_secret="r-secret",
        redis_url="  ",
    )
    assert settings.redis_url is None


def test_secrets_generated_and_persisted(tmp_path):
    first = Settings(shared_fs_root=str(tmp_path))
    second = Settings(shared_fs_root=str(tmp_path))
    assert first.jwt_access_secret
    assert first.jwt_access_secret != first.jwt_refresh_secret
    assert second.jwt_access_secret == first.jwt_access_secret
    assert second.jwt_refresh_secret == first.jwt_refresh_secret
    assert (tmp_path / ".jwt_access_secret").exists()


def test_identical_secrets_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Settings(
            shared_fs_root=str(tmp_path),
            jwt_access_secret="same",
            jwt_refresh_secret="same",
        )


def test_page_size_bounds(tmp_path):
    with pytest.raises(ValidationError):
        Settings(
            shared_fs_root=str(tmp_path),
            jwt_access_secret="a-secret",
            jwt_refresh_secret="r-secret",
            default_page_size=50,
            max_page_size=10,
        )


def test_settings_cache_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("OTP_TTL_MINUTES", "15")
    reset_settings_cache()
    assert get_settings().otp_ttl_minutes == 15
    reset_settings_cache()
