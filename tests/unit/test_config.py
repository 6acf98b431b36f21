"""Unit tests for configuration."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from prism_orchestrator.core.config import EngineSettings


def test_engine_settings_defaults() -> None:
    """Test engine settings default values."""
    settings = EngineSettings()

    assert settings.workspace_path == Path(".prism")
    assert settings.ai_provider == "anthropic"
    assert settings.provider_order == ["anthropic", "openai", "llama"]
    assert settings.timeout_minutes == 30
    assert settings.max_retries == 3
    assert settings.max_fallbacks == 2
    assert settings.lock_stale_seconds > settings.lock_heartbeat_seconds
    assert settings.sessions_dir == Path(".prism") / "sessions"
    assert settings.lock_file == Path(".prism") / ".workspace.lock"


def test_preferred_provider_rotates_chain() -> None:
    settings = EngineSettings(ai_provider="openai")

    assert settings.effective_provider_order() == ["openai", "llama", "anthropic"]


def test_preferred_provider_outside_chain_goes_first() -> None:
    settings = EngineSettings(ai_provider="llama", provider_order=["anthropic", "openai"])

    assert settings.effective_provider_order() == ["llama", "anthropic", "openai"]


def test_environment_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AI_PROVIDER", "OpenAI")
    monkeypatch.setenv("PRISM_PROVIDER_ORDER", "openai, anthropic")
    monkeypatch.setenv("WORKFLOW_TIMEOUT_MINUTES", "45")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    settings = EngineSettings()

    assert settings.ai_provider == "openai"
    assert settings.provider_order == ["openai", "anthropic"]
    assert settings.timeout_minutes == 45
    assert settings.configured_providers() == {"anthropic": False, "openai": True, "llama": False}
    assert settings.available_provider_order() == ["openai"]


def test_unknown_provider_rejected() -> None:
    with pytest.raises(ValidationError):
        EngineSettings(ai_provider="gemini")
    with pytest.raises(ValidationError):
        EngineSettings(provider_order=["anthropic", "gemini"])
    with pytest.raises(ValidationError):
        EngineSettings(provider_order=["openai", "openai"])


def test_stale_threshold_must_exceed_heartbeat() -> None:
    with pytest.raises(ValidationError):
        EngineSettings(lock_heartbeat_seconds=10.0, lock_stale_seconds=10.0)


def test_blank_api_key_is_not_configured() -> None:
    settings = EngineSettings(anthropic_api_key="   ")

    assert settings.configured_providers()["anthropic"] is False


def test_workspace_config_file_is_read(isolated_env: Path) -> None:
    config = isolated_env / ".prism" / "config.yaml"
    config.parent.mkdir()
    config.write_text("max_retries: 5\nretention_days: 7\n", encoding="utf-8")

    settings = EngineSettings()

    assert settings.max_retries == 5
    assert settings.retention_days == 7


def test_environment_overrides_config_file(isolated_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    config = isolated_env / ".prism" / "config.yaml"
    config.parent.mkdir()
    config.write_text("max_retries: 5\n", encoding="utf-8")
    monkeypatch.setenv("PRISM_MAX_RETRIES", "1")

    assert EngineSettings().max_retries == 1


def test_explicit_config_file_location(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    custom = tmp_path / "custom.yaml"
    custom.write_text("max_fallbacks: 0\n", encoding="utf-8")
    monkeypatch.setenv("PRISM_CONFIG_FILE", str(custom))

    assert EngineSettings().max_fallbacks == 0
