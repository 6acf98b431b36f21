"""Test configuration and fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from prism_orchestrator.core.config import EngineSettings
from prism_orchestrator.llm.provider import LLMProvider
from prism_orchestrator.llm.selector import ProviderSelector, RetryPolicy
from prism_orchestrator.state.models import SessionConfig
from prism_orchestrator.state.session_store import SessionStore

_ENGINE_ENV_VARS = (
    "ANTHROPIC_API_KEY",
    "OPENAI_API_KEY",
    "LLAMA_MODEL_PATH",
    "AI_PROVIDER",
    "LOG_LEVEL",
    "WORKFLOW_TIMEOUT_MINUTES",
)


class FakeProvider(LLMProvider):
    """Scripted provider: pops one outcome per call (exception or text)."""

    def __init__(self, name: str, outcomes: list[Any] | None = None, default: str = "ok") -> None:
        self._name = name
        self.outcomes = list(outcomes or [])
        self.default = default
        self.prompts: list[str] = []

    @property
    def name(self) -> str:
        return self._name

    def generate(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> str:
        self.prompts.append(prompt)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            return str(outcome)
        return self.default


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run every test in an empty directory with no engine settings in the environment."""
    for name in list(os.environ):
        if name.startswith("PRISM_") or name in _ENGINE_ENV_VARS:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Provide a temporary workspace directory."""
    path = tmp_path / ".prism"
    path.mkdir()
    return path


@pytest.fixture
def store(workspace: Path) -> SessionStore:
    return SessionStore(workspace / "sessions")


@pytest.fixture
def session_config() -> SessionConfig:
    return SessionConfig(
        ai_provider="A",
        provider_order=("A", "B"),
        workflow_timeout_minutes=30,
        max_retries=3,
        max_fallbacks=2,
    )


@pytest.fixture
def settings(workspace: Path) -> EngineSettings:
    """Provide settings with one configured provider."""
    return EngineSettings(
        workspace_path=workspace,
        anthropic_api_key="test-key",
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        retry_jitter=0.0,
    )


@pytest.fixture
def make_provider() -> Callable[..., FakeProvider]:
    return FakeProvider


@pytest.fixture
def sleeps() -> list[float]:
    """Delays requested by a selector built with ``make_selector``."""
    return []


@pytest.fixture
def make_selector(sleeps: list[float]) -> Callable[..., ProviderSelector]:
    """Build a selector over fake providers; backoff is recorded instead of slept."""

    def _make(
        providers: list[LLMProvider],
        *,
        max_retries: int = 3,
        max_fallbacks: int = 2,
        base_delay: float = 1.0,
        **kwargs: Any,
    ) -> ProviderSelector:
        by_name = {provider.name: provider for provider in providers}
        return ProviderSelector(
            list(by_name),
            by_name.__getitem__,
            policy=RetryPolicy(
                max_retries=max_retries,
                base_delay=base_delay,
                max_delay=30.0,
                multiplier=2.0,
                jitter=0.0,
            ),
            max_fallbacks=max_fallbacks,
            sleep=sleeps.append,
            **kwargs,
        )

    return _make
