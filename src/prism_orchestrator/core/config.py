"""Engine configuration.

Configuration is loaded from (highest priority first):
- explicit keyword arguments
- environment variables (``PRISM_*``, plus the provider API key variables)
- a local ``.env`` file (if present)
- ``<workspace>/config.yaml`` (if present)

Only the presence of credentials is ever copied into session state; the keys
themselves stay in the environment.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

KNOWN_PROVIDERS: tuple[str, ...] = ("anthropic", "openai", "llama")

DEFAULT_WORKSPACE = Path(".prism")
CONFIG_FILE_NAME = "config.yaml"


def default_config_file() -> Path:
    """Location of the user configuration file.

    ``PRISM_CONFIG_FILE`` wins; otherwise ``config.yaml`` inside the workspace
    named by ``PRISM_WORKSPACE_PATH`` (default ``.prism``).
    """

    explicit = os.environ.get("PRISM_CONFIG_FILE")
    if explicit:
        return Path(explicit)
    workspace = os.environ.get("PRISM_WORKSPACE_PATH")
    return (Path(workspace) if workspace else DEFAULT_WORKSPACE) / CONFIG_FILE_NAME


class EngineSettings(BaseSettings):
    """Settings for the workflow engine."""

    workspace_path: Path = Field(
        default=DEFAULT_WORKSPACE,
        description="Directory holding sessions, the workspace lock and metrics",
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    # Provider selection
    ai_provider: str = Field(
        default="anthropic",
        validation_alias="AI_PROVIDER",
        description="Preferred provider; the fallback chain is rotated to start here",
    )
    provider_order: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(KNOWN_PROVIDERS),
        description="Fallback chain of provider names (comma-separated in the environment)",
    )
    max_retries: int = Field(default=3, ge=0, description="Retries per provider for transient errors")
    max_fallbacks: int = Field(default=2, ge=0, description="Maximum provider substitutions per call")
    retry_base_delay: float = Field(default=1.0, ge=0.0, description="Initial backoff in seconds")
    retry_max_delay: float = Field(default=30.0, ge=0.0, description="Backoff cap in seconds")
    retry_multiplier: float = Field(default=2.0, ge=1.0, description="Backoff growth factor")
    retry_jitter: float = Field(default=0.1, ge=0.0, lt=1.0, description="Relative jitter (+/-)")
    request_timeout_seconds: float = Field(default=120.0, gt=0.0, description="Per-request timeout")

    # Workflow
    timeout_minutes: int = Field(
        default=30,
        ge=1,
        validation_alias="WORKFLOW_TIMEOUT_MINUTES",
        description="Wall-clock budget for one pipeline run",
    )
    max_clarification_iterations: int = Field(default=3, ge=1, le=10)

    # Workspace lock
    lock_heartbeat_seconds: float = Field(default=5.0, gt=0.0)
    lock_stale_seconds: float = Field(default=10.0, gt=0.0)
    lock_wait_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="How long to wait for another run to release the workspace (0 = fail fast)",
    )

    retention_days: int = Field(default=30, ge=1, le=365)

    # Credentials (presence only is recorded in sessions)
    anthropic_api_key: str | None = Field(default=None, validation_alias="ANTHROPIC_API_KEY")
    openai_api_key: str | None = Field(default=None, validation_alias="OPENAI_API_KEY")
    llama_model_path: Path | None = Field(default=None, validation_alias="LLAMA_MODEL_PATH")

    # Models
    anthropic_model: str = Field(default="claude-sonnet-4-5-20250929")
    openai_model: str = Field(default="gpt-4o")
    llama_n_ctx: int = Field(default=4096, gt=0)
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)
    max_output_tokens: int = Field(default=8000, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="PRISM_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=default_config_file()),
            file_secret_settings,
        )

    @field_validator("provider_order", mode="before")
    @classmethod
    def _split_provider_order(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @field_validator("ai_provider")
    @classmethod
    def _known_primary(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in KNOWN_PROVIDERS:
            raise ValueError(
                f"Unknown provider {value!r}; expected one of: {', '.join(KNOWN_PROVIDERS)}"
            )
        return normalized

    @field_validator("provider_order")
    @classmethod
    def _known_chain(cls, value: list[str]) -> list[str]:
        normalized = [name.strip().lower() for name in value]
        unknown = [name for name in normalized if name not in KNOWN_PROVIDERS]
        if unknown:
            raise ValueError(f"Unknown providers in provider_order: {', '.join(unknown)}")
        if len(set(normalized)) != len(normalized):
            raise ValueError("provider_order must not contain duplicates")
        if not normalized:
            raise ValueError("provider_order must name at least one provider")
        return normalized

    @model_validator(mode="after")
    def _check_lock_timing(self) -> EngineSettings:
        if self.lock_stale_seconds <= self.lock_heartbeat_seconds:
            raise ValueError(
                "lock_stale_seconds must be greater than lock_heartbeat_seconds "
                f"(got {self.lock_stale_seconds} <= {self.lock_heartbeat_seconds})"
            )
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        return self

    def effective_provider_order(self) -> list[str]:
        """Fallback chain rotated so the preferred provider comes first."""

        chain = list(self.provider_order)
        if self.ai_provider not in chain:
            return [self.ai_provider, *chain]
        idx = chain.index(self.ai_provider)
        return chain[idx:] + chain[:idx]

    def configured_providers(self) -> dict[str, bool]:
        """Credential presence per known provider."""

        return {
            "anthropic": bool(self.anthropic_api_key and self.anthropic_api_key.strip()),
            "openai": bool(self.openai_api_key and self.openai_api_key.strip()),
            "llama": self.llama_model_path is not None,
        }

    def available_provider_order(self) -> list[str]:
        """Effective chain restricted to providers that have credentials."""

        configured = self.configured_providers()
        return [name for name in self.effective_provider_order() if configured.get(name)]

    @property
    def sessions_dir(self) -> Path:
        return self.workspace_path / "sessions"

    @property
    def lock_file(self) -> Path:
        return self.workspace_path / ".workspace.lock"

    @property
    def metrics_file(self) -> Path:
        return self.workspace_path / "metrics.log"
