"""Environment variable validation and management."""

import logging
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

_VALID_APP_ENVS = {"development", "test", "production"}
_MIN_SECRET_LENGTH = 32

# Only used outside production so a fresh checkout can boot without a .env.
_DEV_JWT_SECRET = "dev-access-secret-change-me-0123456789abcdef"
_DEV_JWT_REFRESH_SECRET = "dev-refresh-secret-change-me-0123456789abcdef"


class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


@dataclass(frozen=True)
class Settings:
    app_env: str
    jwt_secret: str
    jwt_refresh_secret: str
    jwt_access_token_ttl_seconds: int
    jwt_refresh_token_ttl_days: int
    frontend_app_urls: List[str] = field(default_factory=list)
    openai_api_key: Optional[str] = None
    openai_api_url: str = "https://api.openai.com/v1/chat/completions"
    llm_model: str = "gpt-3.5-turbo"
    llm_timeout: int = 60

    @property
    def frontend_app_url(self) -> str:
        return self.frontend_app_urls[0] if self.frontend_app_urls else "http://localhost:5174"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def _positive_int(name: str, default: int, errors: List[str]) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        errors.append(f"{name} must be an integer, got '{raw}'")
        return default
    if value <= 0:
        errors.append(f"{name} must be positive, got {value}")
        return default
    return value


def _secret(name: str, fallback: str, production: bool, errors: List[str]) -> str:
    value = os.getenv(name)
    if not value:
        if production:
            errors.append(f"{name} is required")
            return ""
        logger.warning("%s not set; using development fallback secret", name)
        return fallback
    if len(value) < _MIN_SECRET_LENGTH:
        errors.append(f"{name} must be at least {_MIN_SECRET_LENGTH} characters")
    return value


def load_settings() -> Settings:
    """Read and validate settings from the environment.

    Raises EnvironmentError listing every invalid or missing variable.
    """
    errors: List[str] = []

    app_env = (os.getenv("APP_ENV") or "development").strip().lower()
    if app_env not in _VALID_APP_ENVS:
        errors.append(f"APP_ENV must be one of {sorted(_VALID_APP_ENVS)}, got '{app_env}'")
    production = app_env == "production"

    jwt_secret = _secret("JWT_SECRET", _DEV_JWT_SECRET, production, errors)
    jwt_refresh_secret = _secret("JWT_REFRESH_SECRET", _DEV_JWT_REFRESH_SECRET, production, errors)

    access_ttl = _positive_int("JWT_ACCESS_TOKEN_TTL_SECONDS", 900, errors)
    refresh_ttl_days = _positive_int("JWT_REFRESH_TOKEN_TTL_DAYS", 30, errors)
    llm_timeout = _positive_int("LLM_TIMEOUT", 60, errors)

    raw_urls = os.getenv("FRONTEND_APP_URLS") or "http://localhost:5174"
    frontend_urls = [url.strip() for url in raw_urls.split(",") if url.strip()]

    openai_api_key = os.getenv("OPENAI_API_KEY") or None
    if not openai_api_key and production:
        errors.append("OPENAI_API_KEY is required")

    openai_api_url = os.getenv("OPENAI_API_URL") or "https://api.openai.com/v1/chat/completions"
    if not (openai_api_url.startswith("http://") or openai_api_url.startswith("https://")):
        errors.append(f"Invalid URL format for OPENAI_API_URL: {openai_api_url}")

    llm_model = (os.getenv("LLM_MODEL") or "gpt-3.5-turbo").strip()
    if not llm_model:
        errors.append("LLM_MODEL must not be empty")

    if errors:
        raise EnvironmentError("Invalid environment configuration: " + "; ".join(errors))

    return Settings(
        app_env=app_env,
        jwt_secret=jwt_secret,
        jwt_refresh_secret=jwt_refresh_secret,
        jwt_access_token_ttl_seconds=access_ttl,
        jwt_refresh_token_ttl_days=refresh_ttl_days,
        frontend_app_urls=frontend_urls,
        openai_api_key=openai_api_key,
        openai_api_url=openai_api_url,
        llm_model=llm_model,
        llm_timeout=llm_timeout,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


def reset_settings_cache() -> None:
    get_settings.cache_clear()


def validate_environment() -> None:
    """Validate critical environment variables at startup.

    Raises EnvironmentError if validation fails.
    """
    reset_settings_cache()
    settings = get_settings()

    optional_vars: Dict[str, str] = {
        "OPENAI_API_KEY": "API key for the tutor assistant",
        "FRONTEND_APP_URLS": "Allowed CORS origins",
        "DB_PATH": "SQLite database file",
    }
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

    logger.info(
        "Environment validated (env=%s, db=%s, access_ttl=%ss, refresh_ttl=%sd)",
        settings.app_env,
        os.getenv("DB_PATH") or "data.db",
        settings.jwt_access_token_ttl_seconds,
        settings.jwt_refresh_token_ttl_days,
    )


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}
