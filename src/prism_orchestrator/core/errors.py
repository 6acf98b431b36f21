"""Error taxonomy for the workflow engine.

Every error carries a stable ``code`` and a ``recoverable`` flag so the CLI can
render an actionable message and decide on the exit status.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""

    code: str = "ENGINE_ERROR"

    def __init__(self, message: str, *, recoverable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.recoverable = recoverable


class StorageError(EngineError):
    """Filesystem operation failed. Never retried by the engine."""

    code = "IO_ERROR"

    def __init__(self, message: str, path: Path | str) -> None:
        super().__init__(f"{message}: {path}")
        self.path = str(path)


class ValidationError(EngineError):
    """Data failed schema validation on read or on the pre-write round-trip."""

    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        schema_name: str,
        errors: list[dict[str, Any]] | None = None,
        *,
        path: Path | str | None = None,
    ) -> None:
        super().__init__(f"Validation failed for {schema_name}: {message}")
        self.schema_name = schema_name
        self.errors = errors or []
        self.path = str(path) if path is not None else None


class ProviderError(EngineError):
    """A generation provider call failed.

    Transient errors are retried and may trigger a fallback; permanent errors
    propagate immediately.
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        message: str,
        provider: str,
        *,
        is_transient: bool,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(f"AI provider {provider} failed: {message}", recoverable=is_transient)
        self.provider = provider
        self.is_transient = is_transient
        self.retry_after = retry_after


class SessionError(EngineError):
    """Session state is missing, corrupted, or used out of order."""

    code = "SESSION_ERROR"

    def __init__(self, message: str, session_id: str, *, path: Path | str | None = None) -> None:
        detail = f"Session {session_id} error: {message}"
        if path is not None:
            detail = f"{detail} ({path})"
        super().__init__(detail)
        self.session_id = session_id
        self.path = str(path) if path is not None else None


class LockError(EngineError):
    """The workspace is held by another live process."""

    code = "LOCK_ERROR"

    def __init__(self, message: str, lock_path: Path | str, holder: dict[str, Any] | None = None) -> None:
        super().__init__(message, recoverable=True)
        self.lock_path = str(lock_path)
        self.holder = holder or {}


class ConfigurationError(EngineError):
    """Configuration is missing or invalid."""

    code = "CONFIG_ERROR"

    def __init__(self, message: str, config_key: str) -> None:
        super().__init__(f"Configuration error for {config_key}: {message}")
        self.config_key = config_key


class WorkflowError(EngineError):
    """A pipeline step failed; wraps the underlying cause."""

    code = "WORKFLOW_ERROR"

    def __init__(
        self,
        message: str,
        step: str,
        *,
        cause: BaseException | None = None,
        session_id: str | None = None,
    ) -> None:
        super().__init__(f"Workflow failed at step {step}: {message}", recoverable=True)
        self.step = step
        self.cause = cause
        self.session_id = session_id


class WorkflowCancelled(EngineError):
    """Raised at a suspension point once the cancellation signal has fired."""

    code = "CANCELLED"

    def __init__(self, reason: str = "Workflow cancelled") -> None:
        super().__init__(reason, recoverable=True)
        self.reason = reason


def _suggestions(error: EngineError) -> list[str]:
    if isinstance(error, ProviderError):
        if error.is_transient:
            return [
                "This is a transient error; retry later or configure another provider",
                "Resume the session once the provider is available again",
            ]
        return [f"Check the API key and request settings for provider {error.provider}"]
    if isinstance(error, ValidationError):
        hints = [f"Check that the data matches the {error.schema_name} schema"]
        if error.path:
            hints.append(f"Inspect {error.path}")
        return hints
    if isinstance(error, SessionError):
        return [
            "List sessions with: prism list-sessions",
            f"If the state is corrupted, delete the session directory for {error.session_id} and start again",
        ]
    if isinstance(error, LockError):
        return [
            "Another run holds the workspace; wait for it to finish or retry later",
            f"If no other run is active the lock at {error.lock_path} will be cleared once stale",
        ]
    if isinstance(error, ConfigurationError):
        return [f"Check your .env or config.yaml and ensure {error.config_key} is set correctly"]
    if isinstance(error, WorkflowError):
        if error.session_id:
            return [f"Resume with: prism resume {error.session_id}"]
        return ["The workflow can be resumed from its last checkpoint"]
    if isinstance(error, WorkflowCancelled):
        return ["The session was paused; resume it with: prism resume <session-id>"]
    if isinstance(error, StorageError):
        return [f"Check permissions and free space for {error.path}"]
    return ["Re-run with LOG_LEVEL=DEBUG for details"]


def format_error(error: BaseException) -> str:
    """Render an error for the terminal: cause, code, and recovery suggestions."""

    if not isinstance(error, EngineError):
        return f"Error: {error}\n   Code: UNEXPECTED\n   Hint: Re-run with LOG_LEVEL=DEBUG for details"

    lines = [f"Error: {error.message}", f"   Code: {error.code}"]
    if isinstance(error, WorkflowError) and error.cause is not None:
        lines.append(f"   Root cause: {error.cause}")
    if isinstance(error, ValidationError):
        for idx, item in enumerate(error.errors, start=1):
            lines.append(f"   {idx}. {item.get('loc', '')}: {item.get('msg', '')}")
    for hint in _suggestions(error):
        lines.append(f"   Hint: {hint}")
    return "\n".join(lines)
