"""Persisted records: sessions, checkpoints, and error records.

These models are the schemas the codec validates against. ``Session`` enforces
the checkpoint invariant: the checkpoint list is always exactly the first N
pipeline steps, in order, and ``current_step`` is the step after them.
"""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from prism_orchestrator.orchestrator.workflow.state_machine import (
    PIPELINE_STEPS,
    SessionStatus,
    WorkflowStep,
    step_after,
)

SESSION_ID_PATTERN = r"^sess-\d{13}$"
STATE_VERSION = "1.0"


def utc_now() -> datetime:
    return datetime.now(UTC)


class CheckpointMetadata(BaseModel):
    """Execution facts recorded alongside a completed step."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    duration_ms: int = Field(ge=0)
    provider_used: str | None = None
    estimated_cost: float | None = Field(default=None, ge=0.0)


class Checkpoint(BaseModel):
    """Immutable proof that a pipeline step completed."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    step: WorkflowStep
    timestamp: datetime
    outputs: tuple[str, ...] = ()
    metadata: CheckpointMetadata


class SessionConfig(BaseModel):
    """Configuration snapshot taken when a session is created."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    ai_provider: str = Field(min_length=1)
    provider_order: tuple[str, ...] = Field(min_length=1)
    workflow_timeout_minutes: int = Field(ge=1)
    max_retries: int = Field(ge=0)
    max_fallbacks: int = Field(ge=0)
    max_clarification_iterations: int = Field(default=3, ge=1)


class Session(BaseModel):
    """Durable record of one pipeline run."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    session_id: str = Field(pattern=SESSION_ID_PATTERN)
    current_step: WorkflowStep | None
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    inputs: dict[str, str]
    outputs: dict[str, str] = Field(default_factory=dict)
    checkpoints: tuple[Checkpoint, ...] = Field(default=(), max_length=len(PIPELINE_STEPS))
    config: SessionConfig

    @model_validator(mode="after")
    def _check_progress(self) -> Session:
        completed = [cp.step for cp in self.checkpoints]
        expected = list(PIPELINE_STEPS[: len(completed)])
        if completed != expected:
            raise ValueError(
                "checkpoints must cover pipeline steps in order without duplicates; "
                f"got {[s.value for s in completed]}"
            )
        if self.current_step != step_after(len(completed)):
            expected_step = step_after(len(completed))
            raise ValueError(
                f"current_step {self.current_step and self.current_step.value!r} does not match "
                f"{len(completed)} checkpoint(s); expected "
                f"{expected_step and expected_step.value!r}"
            )
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not be earlier than created_at")
        if "prd_source" in self.inputs and not self.inputs["prd_source"].strip():
            raise ValueError("inputs.prd_source must not be empty")
        return self

    def has_checkpoint(self, step: WorkflowStep) -> bool:
        return any(cp.step == step for cp in self.checkpoints)

    @property
    def last_checkpoint(self) -> Checkpoint | None:
        return self.checkpoints[-1] if self.checkpoints else None

    @property
    def is_complete(self) -> bool:
        return self.current_step is None


class SessionState(BaseModel):
    """On-disk wrapper for a session (``session_state.yaml``)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = STATE_VERSION
    session: Session
    last_checkpoint: Checkpoint | None = None

    @model_validator(mode="after")
    def _check_last_checkpoint(self) -> SessionState:
        if self.last_checkpoint != self.session.last_checkpoint:
            raise ValueError("last_checkpoint does not match the session's checkpoint list")
        return self

    @classmethod
    def wrap(cls, session: Session) -> SessionState:
        return cls(session=session, last_checkpoint=session.last_checkpoint)


class ErrorRecord(BaseModel):
    """Postmortem record written when a session fails."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    session_id: str
    step: str | None = None
    code: str
    message: str
    stack: str | None = None
    recoverable: bool = True
    timestamp: datetime = Field(default_factory=utc_now)
