"""Pipeline orchestrator.

Runs the five workflow steps in order for one session. Steps that already have a
checkpoint are skipped, so re-running a session resumes where it stopped. A step
is checkpointed only after its outputs are on disk.

The deadline callback and checkpointing are serialized by one lock, so a step
that finishes after the deadline paused the session can never overwrite the
paused record. An interrupt only fires the cancellation signal; the run loop
persists the pause at its next suspension point.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from prism_orchestrator.core.errors import WorkflowCancelled, WorkflowError
from prism_orchestrator.llm.selector import ProviderSelector
from prism_orchestrator.orchestrator.workflow.deadline import CancellationSignal, DeadlineController
from prism_orchestrator.orchestrator.workflow.state_machine import (
    PIPELINE_STEPS,
    SessionStatus,
    WorkflowStep,
)
from prism_orchestrator.state.lock import WorkspaceLock
from prism_orchestrator.state.metrics import MetricsLog
from prism_orchestrator.state.models import CheckpointMetadata, Session
from prism_orchestrator.state.session_store import SessionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class StepResult:
    output_paths: tuple[str, ...] = ()
    provider_used: str | None = None
    named_outputs: dict[str, str] = field(default_factory=dict)
    estimated_cost: float | None = None


class Step(Protocol):
    """One pipeline step.

    Steps write their outputs through the atomic store and must tolerate being
    re-run after a crash (outputs are overwritten, never appended).
    """

    @property
    def name(self) -> WorkflowStep: ...

    def execute(self, prior_outputs: Mapping[str, str], signal: CancellationSignal) -> StepResult: ...


class PipelineOrchestrator:
    """Drives one session through the pipeline."""

    def __init__(
        self,
        store: SessionStore,
        steps: Sequence[Step],
        *,
        selector: ProviderSelector | None = None,
        metrics: MetricsLog | None = None,
        lock: WorkspaceLock | None = None,
        timeout_seconds: float | None = None,
        lock_wait_seconds: float = 0.0,
    ) -> None:
        names = [step.name for step in steps]
        if names != list(PIPELINE_STEPS):
            raise ValueError(
                f"steps must be exactly {[s.value for s in PIPELINE_STEPS]}, got {[s.value for s in names]}"
            )
        self.store = store
        self.steps = list(steps)
        self.selector = selector
        self.metrics = metrics
        self.lock = lock
        self.timeout_seconds = timeout_seconds
        self.lock_wait_seconds = lock_wait_seconds

        self._state_lock = threading.RLock()
        self._session: Session | None = None
        self._deadline: DeadlineController | None = None
        self._pending_interrupt: str | None = None
        self._paused = False
        self._finished = False

    def _record(self, event: str, **fields: object) -> None:
        if self.metrics is not None:
            self.metrics.record(event, **fields)

    # -- pausing ------------------------------------------------------------

    def _pause_current(self) -> None:
        """Persist ``paused`` unless the run already ended. Caller holds the state lock."""

        if self._finished or self._paused or self._session is None:
            return
        self._session = self.store.pause_session(self._session)
        self._paused = True

    def _on_timeout(self) -> None:
        with self._state_lock:
            self._pause_current()

    def interrupt(self, reason: str = "Interrupted") -> None:
        """Request a graceful pause of the current run.

        Signal handlers call this on the main thread, possibly in the middle of a
        checkpoint write, so nothing is persisted here. The signal fires and the
        run loop writes ``paused`` at its next suspension point. An interrupt
        that arrives before ``run`` cancels that run as soon as it starts.
        """
        with self._state_lock:
            deadline = self._deadline
            if deadline is None:
                self._pending_interrupt = reason
        if deadline is not None:
            deadline.abort(reason)

    def _finish_paused(self, session_id: str, reason: str) -> Session:
        with self._state_lock:
            if not self._paused:
                current = self.store.load_session(session_id)
                if current.status is SessionStatus.IN_PROGRESS:
                    self.store.pause_session(current)
                self._paused = True
            self._finished = True
        paused = self.store.load_session(session_id)
        logger.warning(
            "Session paused",
            extra={
                "session_id": session_id,
                "reason": reason,
                "next_step": paused.current_step.value if paused.current_step else None,
            },
        )
        self._record("session_paused", session_id=session_id, reason=reason)
        return paused

    # -- running ------------------------------------------------------------

    def run(self, session: Session) -> Session:
        """Run (or resume) ``session`` to completion, pause, or failure.

        With a workspace lock configured, nothing is written to the session
        until the lock is held; a paused or failed session is switched back to
        ``in-progress`` only then.

        Returns:
            The persisted session: ``completed`` or ``paused``.

        Raises:
            WorkflowError: A step failed; the session is persisted as ``failed``.
            LockError: Another live run holds the workspace.
            WorkflowCancelled: Interrupted while waiting for the workspace lock;
                the session on disk is left as it was.
        """
        timeout = self.timeout_seconds or session.config.workflow_timeout_minutes * 60.0
        deadline = DeadlineController(timeout)
        with self._state_lock:
            self._session = None
            self._paused = False
            self._finished = False
            self._deadline = deadline
            if self._pending_interrupt is not None:
                deadline.abort(self._pending_interrupt)
                self._pending_interrupt = None

        handle = None
        try:
            if self.lock is not None:
                handle = self.lock.acquire_or_wait(self.lock_wait_seconds, deadline.get_signal())
            return self._run(session.session_id, deadline)
        finally:
            deadline.cancel()
            if handle is not None and self.lock is not None:
                self.lock.release(handle)

    def _run(self, session_id: str, deadline: DeadlineController) -> Session:
        session = self.store.load_session(session_id)
        if session.status is SessionStatus.COMPLETED:
            logger.info("Session already completed", extra={"session_id": session_id})
            return session
        if session.status is not SessionStatus.IN_PROGRESS:
            session = self.store.resume_session(session_id)

        with self._state_lock:
            self._session = session
        signal = deadline.get_signal()

        try:
            signal.raise_if_cancelled()
            deadline.start(self._on_timeout)
            for step in self.steps:
                if session.has_checkpoint(step.name):
                    logger.info(
                        "Skipping checkpointed step",
                        extra={"session_id": session_id, "step": step.name.value},
                    )
                    continue
                session = self._run_step(session, step, signal)

            with self._state_lock:
                if self._paused:
                    raise WorkflowCancelled("Workflow paused")
                signal.raise_if_cancelled()
                session = self.store.complete_session(session)
                self._session = session
                self._finished = True
        except WorkflowCancelled as exc:
            return self._finish_paused(session_id, exc.reason)

        self._record("session_completed", session_id=session_id)
        return session

    def _run_step(self, session: Session, step: Step, signal: CancellationSignal) -> Session:
        logger.info("Running step", extra={"session_id": session.session_id, "step": step.name.value})
        started = time.monotonic()
        try:
            signal.raise_if_cancelled()
            result = step.execute({**session.inputs, **session.outputs}, signal)
        except WorkflowCancelled:
            raise
        except Exception as exc:
            if signal.is_set():
                raise WorkflowCancelled(signal.reason or "Workflow cancelled") from exc
            error = WorkflowError(str(exc), step.name.value, cause=exc, session_id=session.session_id)
            error.__cause__ = exc
            with self._state_lock:
                if self._paused:
                    raise WorkflowCancelled("Workflow paused") from exc
                self._session = self.store.fail_session(session, error)
                self._finished = True
            self._record(
                "step_failed",
                session_id=session.session_id,
                step=step.name.value,
                error=type(exc).__name__,
            )
            raise error from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        provider_used = result.provider_used
        if provider_used is None and result.output_paths and self.selector is not None:
            provider_used = self.selector.active_provider
        metadata = CheckpointMetadata(
            duration_ms=duration_ms,
            provider_used=provider_used,
            estimated_cost=result.estimated_cost,
        )

        with self._state_lock:
            if self._paused:
                raise WorkflowCancelled("Workflow paused")
            session = self.store.save_checkpoint(
                session,
                step.name,
                result.output_paths,
                metadata,
                named_outputs=result.named_outputs,
            )
            self._session = session

        self._record(
            "step_completed",
            session_id=session.session_id,
            step=step.name.value,
            duration_ms=duration_ms,
            provider=provider_used,
            estimated_cost=result.estimated_cost,
        )
        return session
