from __future__ import annotations

from enum import Enum


class WorkflowStep(str, Enum):
    PRD_ANALYSIS = "prd-analysis"
    FIGMA_ANALYSIS = "figma-analysis"
    VALIDATION = "validation"
    CLARIFICATION = "clarification"
    TDD_GENERATION = "tdd-generation"

    @property
    def position(self) -> int:
        """Zero-based position in the pipeline."""

        return PIPELINE_STEPS.index(self)

    @property
    def directory(self) -> str:
        """Name of the per-step output directory inside a session."""

        return STEP_DIRECTORIES[self]


PIPELINE_STEPS: tuple[WorkflowStep, ...] = (
    WorkflowStep.PRD_ANALYSIS,
    WorkflowStep.FIGMA_ANALYSIS,
    WorkflowStep.VALIDATION,
    WorkflowStep.CLARIFICATION,
    WorkflowStep.TDD_GENERATION,
)

STEP_DIRECTORIES: dict[WorkflowStep, str] = {
    WorkflowStep.PRD_ANALYSIS: "01-prd-analysis",
    WorkflowStep.FIGMA_ANALYSIS: "02-figma-analysis",
    WorkflowStep.VALIDATION: "03-validation",
    WorkflowStep.CLARIFICATION: "04-clarification",
    WorkflowStep.TDD_GENERATION: "05-tdd",
}


def step_after(completed: int) -> WorkflowStep | None:
    """The step to run once ``completed`` checkpoints exist (None when done)."""

    if completed < len(PIPELINE_STEPS):
        return PIPELINE_STEPS[completed]
    return None


class SessionStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.IN_PROGRESS: {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.PAUSED,
    },
    SessionStatus.FAILED: {SessionStatus.IN_PROGRESS},
    SessionStatus.PAUSED: {SessionStatus.IN_PROGRESS},
    SessionStatus.COMPLETED: set(),
}


class IllegalTransitionError(ValueError):
    pass


def transition(*, current: SessionStatus, to: SessionStatus) -> SessionStatus:
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to
