import pytest

import env_validation
from env_validation import EnvironmentError, get_env_bool, load_settings

_STRONG_SECRET = "s" * 40


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "APP_ENV",
        "JWT_SECRET",
        "JWT_REFRESH_SECRET",
        "JWT_ACCESS_TOKEN_TTL_SECONDS",
        "JWT_REFRESH_TOKEN_TTL_DAYS",
        "OPENAI_API_KEY",
        "OPENAI_API_URL",
        "FRONTEND_APP_URLS",
        "LLM_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    env_validation.reset_settings_cache()
    yield
    env_validation.reset_settings_cache()


def test_development_defaults():
    settings = load_settings()

    assert settings.app_env == "development"
    assert settings.is_production is False
    assert len(settings.jwt_secret) >= 32
    assert settings.jwt_secret != settings.jwt_refresh_secret
    assert settings.jwt_access_token_ttl_seconds == 900
    assert settings.jwt_refresh_token_ttl_days == 30
    assert settings.frontend_app_url == "http://localhost:5174"


def test_production_requires_secrets_and_api_key(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")

    with pytest.raises(EnvironmentError) as excinfo:
        load_settings()
    message = str(excinfo.value)
    assert "JWT_SECRET is required" in message
    assert "JWT_REFRESH_SECRET is required" in message
    assert "OPENAI_API_KEY is required" in message

    monkeypatch.setenv("JWT_SECRET", _STRONG_SECRET)
    monkeypatch.setenv("JWT_REFRESH_SECRET", _STRONG_SECRET + "r")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert load_settings().is_production is True


def test_short_secret_and_bad_numbers_are_reported(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "too-short")
    monkeypatch.setenv("JWT_ACCESS_TOKEN_TTL_SECONDS", "soon")
    monkeypatch.setenv("JWT_REFRESH_TOKEN_TTL_DAYS", "0")
    monkeypatch.setenv("OPENAI_API_URL", "ftp://example.com")

    with pytest.raises(EnvironmentError) as excinfo:
        load_settings()
    message = str(excinfo.value)
    assert "JWT_SECRET must be at least 32 characters" in message
    assert "JWT_ACCESS_TOKEN_TTL_SECONDS must be an integer" in message
    assert "JWT_REFRESH_TOKEN_TTL_DAYS must be positive" in message
    assert "Invalid URL format for OPENAI_API_URL" in message


def test_frontend_urls_are_split(monkeypatch):
    monkeypatch.setenv("FRONTEND_APP_URLS", "http://a.test, http://b.test,")
    assert load_settings().frontend_app_urls == ["http://a.test", "http://b.test"]


def test_get_settings_is_cached_until_reset(monkeypatch):
    first = env_validation.get_settings()
    monkeypatch.setenv("LLM_TIMEOUT", "5")
    assert env_validation.get_settings() is first

    env_validation.reset_settings_cache()
    assert env_validation.get_settings().llm_timeout == 5


def test_get_env_bool(monkeypatch):
    assert get_env_bool("PURGE_EXPIRED_SESSIONS_ON_START", True) is True
    monkeypatch.setenv("PURGE_EXPIRED_SESSIONS_ON_START", "off")
    assert get_env_bool("PURGE_EXPIRED_SESSIONS_ON_START", True) is False
    monkeypatch.setenv("PURGE_EXPIRED_SESSIONS_ON_START", "Yes")
    assert get_env_bool("PURGE_EXPIRED_SESSIONS_ON_START") is True
