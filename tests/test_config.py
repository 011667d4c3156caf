import pytest
from pydantic import ValidationError

from authgate.config import AuditSinkKind, Settings, get_settings, reset_settings_cache


class TestSettingsDefaults:
    def test_defaults(self):
        settings = Settings()
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_days == 7
        assert settings.max_failed_login_attempts == 5
        assert settings.mfa_challenge_ttl_seconds == 300
        assert settings.login_rate_limit_per_minute == 10
        assert settings.audit_sink == AuditSinkKind.LOG


class TestSettingsValidation:
    @pytest.mark.parametrize(
        "field", ["access_token_ttl_minutes", "max_failed_login_attempts", "login_rate_limit_per_minute"]
    )
    def test_non_positive_rejected(self, field):
        with pytest.raises(ValidationError):
            Settings(**{field: 0})

    def test_blank_redis_url_becomes_none(self):
        assert Settings(redis_url="  ").redis_url is None

    def test_origins_split_on_commas(self):
        settings = Settings(cors_allow_origins="https://a.example, https://b.example,")
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_http_sink_requires_url(self):
        with pytest.raises(ValidationError):
            Settings(audit_sink="http")

    def test_unknown_sink_rejected(self):
        with pytest.raises(ValidationError):
            Settings(audit_sink="kafka")


class TestFromEnv:
    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "30")
        monkeypatch.setenv("JWT_ISSUER", "bank-auth")
        settings = Settings.from_env()
        assert settings.access_token_ttl_minutes == 30
        assert settings.jwt_issuer == "bank-auth"

    def test_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("JWT_ISSUER", "changed")
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().jwt_issuer == "changed"
        reset_settings_cache()
