"""Environment-driven settings."""

from __future__ import annotations

import pytest

from doc_verifier.config import Settings, load_settings
from doc_verifier.exceptions import ConfigurationError


class TestLoadSettings:
    def test_defaults(self, monkeypatch):
        for key in ("DOCVERIFY_QUEUE_CONCURRENCY", "DOCVERIFY_MAX_ATTEMPTS", "DOCVERIFY_DB_PATH"):
            monkeypatch.delenv(key, raising=False)
        settings = load_settings(dotenv=False)
        assert settings.queue_concurrency == Settings.queue_concurrency == 3
        assert settings.max_attempts == 3
        assert settings.openai_api_key is None

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("DOCVERIFY_QUEUE_CONCURRENCY", "8")
        monkeypatch.setenv("DOCVERIFY_DB_PATH", "/tmp/verify.db")
        monkeypatch.setenv("DOCVERIFY_LOG_LEVEL", "debug")
        monkeypatch.setenv("OPENAI_API_KEY", "  sk-test  ")
        settings = load_settings(dotenv=False)
        assert settings.queue_concurrency == 8
        assert settings.db_path == "/tmp/verify.db"
        assert settings.log_level == "DEBUG"
        assert settings.openai_api_key == "sk-test"

    def test_blank_values_fall_back_to_defaults(self, monkeypatch):
        monkeypatch.setenv("DOCVERIFY_MAX_ATTEMPTS", "   ")
        assert load_settings(dotenv=False).max_attempts == 3

    def test_non_integer_is_rejected(self, monkeypatch):
        monkeypatch.setenv("DOCVERIFY_MAX_ATTEMPTS", "three")
        with pytest.raises(ConfigurationError, match="DOCVERIFY_MAX_ATTEMPTS"):
            load_settings(dotenv=False)

    def test_zero_concurrency_is_rejected(self, monkeypatch):
        monkeypatch.setenv("DOCVERIFY_QUEUE_CONCURRENCY", "0")
        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(dotenv=False)
        assert exc_info.value.code == "CONFIGURATION_INVALID"
