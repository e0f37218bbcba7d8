"""Environment variable validation and management."""

import os
import logging
from dataclasses import dataclass
from typing import Dict

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass

_DEFAULTS = {
    "DB_PATH": "data.db",
    "APP_ENV": "production",
    "LLM_URL": "https://api.openai.com/v1/chat/completions",
    "MODEL_ID": "gpt-4",
}

_OPTIONAL_VARS = {
    "LLM_API_KEY": "API key for the chat-completions endpoint",
    "AUTH_SECRET": "Secret mixed into stored token digests",
}

def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in _DEFAULTS.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    app_env = os.getenv("APP_ENV", "").strip().lower()
    if app_env not in {"production", "development", "test"}:
        raise EnvironmentError(f"Invalid APP_ENV: {app_env}")

    url = os.getenv("LLM_URL")
    if url and not (url.startswith("http://") or url.startswith("https://")):
        raise EnvironmentError(f"Invalid URL format for LLM_URL: {url}")

    for var in ("DB_MAX_CONNECTIONS", "AUTH_TOKEN_TTL_HOURS", "PASSWORD_RESET_TTL_MINUTES", "LLM_MAX_TOKENS"):
        raw = os.getenv(var)
        if raw and (not raw.strip().isdigit() or int(raw) <= 0):
            raise EnvironmentError(f"{var} must be a positive integer, got {raw!r}")

    for var, description in _OPTIONAL_VARS.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}

def _safe_int(env_name: str, default: int) -> int:
    raw = os.getenv(env_name, "")
    try:
        return int(raw) if raw else default
    except Exception:
        return default

def _safe_float(env_name: str, default: float) -> float:
    raw = os.getenv(env_name, "")
    try:
        return float(raw) if raw else default
    except Exception:
        return default


@dataclass(frozen=True)
class Settings:
    db_path: str = "data.db"
    db_max_connections: int = 10
    app_env: str = "production"
    auth_secret: str = ""
    token_ttl_hours: int = 168
    reset_ttl_minutes: int = 60
    llm_url: str = "https://api.openai.com/v1/chat/completions"
    llm_api_key: str = ""
    model_id: str = "gpt-4"
    llm_timeout: float = 60.0
    llm_temperature: float = 0.7
    llm_max_tokens: int = 1000
    chat_context_messages: int = 10
    seed_catalog: bool = True

    @property
    def debug(self) -> bool:
        return self.app_env == "development"


def load_settings(overrides: Dict[str, object] | None = None) -> Settings:
    """Build :class:`Settings` from the current environment."""
    values = dict(
        db_path=os.getenv("DB_PATH") or "data.db",
        db_max_connections=max(1, _safe_int("DB_MAX_CONNECTIONS", 10)),
        app_env=(os.getenv("APP_ENV") or "production").strip().lower(),
        auth_secret=os.getenv("AUTH_SECRET", ""),
        token_ttl_hours=max(1, _safe_int("AUTH_TOKEN_TTL_HOURS", 168)),
        reset_ttl_minutes=max(1, _safe_int("PASSWORD_RESET_TTL_MINUTES", 60)),
        llm_url=os.getenv("LLM_URL") or _DEFAULTS["LLM_URL"],
        llm_api_key=os.getenv("LLM_API_KEY", ""),
        model_id=os.getenv("MODEL_ID") or _DEFAULTS["MODEL_ID"],
        llm_timeout=_safe_float("LLM_TIMEOUT", 60.0),
        llm_temperature=_safe_float("LLM_TEMPERATURE", 0.7),
        llm_max_tokens=max(1, _safe_int("LLM_MAX_TOKENS", 1000)),
        chat_context_messages=max(1, _safe_int("CHAT_CONTEXT_MESSAGES", 10)),
        seed_catalog=get_env_bool("SEED_CATALOG", True),
    )
    if overrides:
        values.update(overrides)
    return Settings(**values)
