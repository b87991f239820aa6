"""Tests for settings loading."""

import pytest

from flowchart_ai.config import Settings


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEEPSEEK_API_KEY", "env-key")
    monkeypatch.setenv("ADMIN_TOKEN", "env-admin")
    monkeypatch.setenv("MAX_SESSIONS", "5")
    monkeypatch.setenv("RETRY_MAX_RETRIES", "1")

    settings = Settings(_env_file=None)

    assert settings.deepseek_api_key == "env-key"
    assert settings.max_sessions == 5
    assert settings.session_config().max_sessions == 5
    assert settings.retry_config().max_retries == 1
    assert settings.deepseek_base_url == "https://api.deepseek.com/v1"


def test_session_and_retry_config_defaults(settings: Settings) -> None:
    session_config = settings.session_config()
    retry_config = settings.retry_config()

    assert session_config.session_timeout_seconds == 300
    assert session_config.duplicate_window_seconds == 30
    assert session_config.min_requirement_length == 10
    assert retry_config.base_delay == 1.0
    assert retry_config.max_delay == 10.0
