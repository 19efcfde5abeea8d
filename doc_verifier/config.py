"""
Process configuration, read once at startup from the environment.

A local .env file is honoured via python-dotenv. Every setting has a
default so the service starts with no configuration at all (the
collaborator is then unavailable and every job fails fast).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


def _env_int(key: str, default: int) -> int:
    raw = _env(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(
            f"{key} must be an integer, got {raw!r}", {"variable": key, "value": raw}
        ) from None


@dataclass(frozen=True)
class Settings:
    db_path: str = "doc_verifier.db"
    queue_concurrency: int = 3
    queue_poll_ms: int = 2000
    max_attempts: int = 3
    retry_base_ms: int = 1000
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o"
    download_timeout_s: int = 30
    max_download_bytes: int = 20 * 1024 * 1024
    webhook_timeout_s: int = 10
    webhook_failure_limit: int = 10
    log_level: str = "INFO"


def load_settings(dotenv: bool = True) -> Settings:
    """Build Settings from DOCVERIFY_* / OPENAI_* environment variables.

    Raises:
        ConfigurationError: if a numeric variable is not an integer or
            a count that must be positive is not.
    """
    if dotenv:
        load_dotenv()

    defaults = Settings()
    settings = Settings(
        db_path=_env("DOCVERIFY_DB_PATH") or defaults.db_path,
        queue_concurrency=_env_int("DOCVERIFY_QUEUE_CONCURRENCY", defaults.queue_concurrency),
        queue_poll_ms=_env_int("DOCVERIFY_QUEUE_POLL_MS", defaults.queue_poll_ms),
        max_attempts=_env_int("DOCVERIFY_MAX_ATTEMPTS", defaults.max_attempts),
        retry_base_ms=_env_int("DOCVERIFY_RETRY_BASE_MS", defaults.retry_base_ms),
        openai_api_key=_env("OPENAI_API_KEY"),
        openai_model=_env("OPENAI_MODEL") or defaults.openai_model,
        download_timeout_s=_env_int("DOCVERIFY_DOWNLOAD_TIMEOUT_S", defaults.download_timeout_s),
        max_download_bytes=_env_int("DOCVERIFY_MAX_DOWNLOAD_BYTES", defaults.max_download_bytes),
        webhook_timeout_s=_env_int("DOCVERIFY_WEBHOOK_TIMEOUT_S", defaults.webhook_timeout_s),
        webhook_failure_limit=_env_int(
            "DOCVERIFY_WEBHOOK_FAILURE_LIMIT", defaults.webhook_failure_limit
        ),
        log_level=(_env("DOCVERIFY_LOG_LEVEL") or defaults.log_level).upper(),
    )

    for name in ("queue_concurrency", "max_attempts"):
        if getattr(settings, name) < 1:
            raise ConfigurationError(f"{name} must be at least 1", {"setting": name})
    return settings
