"""Session persistence.

Each session lives in its own directory under ``<workspace>/sessions``:

    sessions/<session-id>/
        session_state.yaml
        error.yaml            (only if the session ever failed)
        01-prd-analysis/ ... 05-tdd/

Every write goes through the atomic store after a codec round-trip check, so the
state file on disk is always either the previous or the next complete version.
"""

from __future__ import annotations

import logging
import re
import threading
import time
import traceback
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from prism_orchestrator.core.errors import EngineError, SessionError, ValidationError
from prism_orchestrator.orchestrator.workflow.state_machine import (
    PIPELINE_STEPS,
    IllegalTransitionError,
    SessionStatus,
    WorkflowStep,
    step_after,
    transition,
)
from prism_orchestrator.state.atomic import ensure_dir, read_model, write_model
from prism_orchestrator.state.codec import validate_data
from prism_orchestrator.state.models import (
    Checkpoint,
    CheckpointMetadata,
    ErrorRecord,
    Session,
    SessionConfig,
    SessionState,
    utc_now,
)

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "session_state.yaml"
ERROR_FILE_NAME = "error.yaml"
_SESSION_DIR_RE = re.compile(r"^sess-\d{13}$")
_ERROR_FILE_RE = re.compile(r"^error(?:-(\d+))?\.yaml$")


class SessionStore:
    """Creates, checkpoints and transitions sessions on disk."""

    def __init__(self, sessions_dir: Path) -> None:
        """Initialize the store.

        Args:
            sessions_dir: Directory that holds one sub-directory per session.
        """
        self.sessions_dir = sessions_dir
        # Serializes writes from the main thread and the deadline timer thread.
        self._lock = threading.RLock()
        self._last_issued_ms = 0

    # -- paths --------------------------------------------------------------

    def session_dir(self, session_id: str) -> Path:
        return self.sessions_dir / session_id

    def state_file(self, session_id: str) -> Path:
        return self.session_dir(session_id) / STATE_FILE_NAME

    def step_dir(self, session_id: str, step: WorkflowStep) -> Path:
        return self.session_dir(session_id) / step.directory

    # -- helpers ------------------------------------------------------------

    def _claim_session_dir(self) -> str:
        ensure_dir(self.sessions_dir)
        millis = max(int(time.time() * 1000), self._last_issued_ms + 1)
        while True:
            session_id = f"sess-{millis}"
            try:
                self.session_dir(session_id).mkdir()
            except FileExistsError:
                millis += 1
                continue
            self._last_issued_ms = millis
            return session_id

    def _updated(self, session: Session, **changes: Any) -> Session:
        # model_copy skips validation; rebuild so the progress invariants are re-checked.
        data = {**dict(session), **changes, "updated_at": max(utc_now(), session.updated_at)}
        try:
            return Session.model_validate(data)
        except ValueError as exc:
            raise SessionError(f"invalid session update ({exc})", session.session_id) from exc

    def _transition(self, session: Session, to: SessionStatus) -> Session:
        try:
            status = transition(current=session.status, to=to)
        except IllegalTransitionError as exc:
            raise SessionError(str(exc), session.session_id) from exc
        return self._updated(session, status=status)

    def _write(self, session: Session) -> None:
        write_model(self.state_file(session.session_id), SessionState.wrap(session))

    # -- lifecycle ----------------------------------------------------------

    def init_session(self, inputs: Mapping[str, str], config: SessionConfig) -> Session:
        """Create a new in-progress session with all step directories.

        Raises:
            ValidationError: If ``prd_source`` is missing or empty.
        """
        if not str(inputs.get("prd_source", "")).strip():
            raise ValidationError("inputs.prd_source is required", "Session")

        with self._lock:
            session_id = self._claim_session_dir()
            now = utc_now()
            session = validate_data(
                {
                    "session_id": session_id,
                    "current_step": PIPELINE_STEPS[0],
                    "status": SessionStatus.IN_PROGRESS,
                    "created_at": now,
                    "updated_at": now,
                    "inputs": dict(inputs),
                    "outputs": {},
                    "checkpoints": (),
                    "config": config,
                },
                Session,
            )
            for step in PIPELINE_STEPS:
                ensure_dir(self.step_dir(session_id, step))
            self._write(session)

        logger.info("Session created", extra={"session_id": session_id})
        return session

    def save_session(self, session: Session) -> Session:
        with self._lock:
            self._write(session)
        return session

    def save_checkpoint(
        self,
        session: Session,
        step: WorkflowStep,
        outputs: Sequence[str],
        metadata: CheckpointMetadata,
        named_outputs: Mapping[str, str] | None = None,
    ) -> Session:
        """Record a completed step and persist the session.

        Call only after the step's outputs are durably on disk.

        Raises:
            SessionError: If the step is already checkpointed, out of order, or
                the session is not in progress.
        """
        with self._lock:
            if session.status is not SessionStatus.IN_PROGRESS:
                raise SessionError(
                    f"cannot checkpoint {step.value} while session is {session.status.value}",
                    session.session_id,
                )
            if session.has_checkpoint(step):
                raise SessionError(f"step {step.value} already has a checkpoint", session.session_id)
            if step != session.current_step:
                expected = session.current_step.value if session.current_step else "none"
                raise SessionError(
                    f"step {step.value} is out of order (next step is {expected})",
                    session.session_id,
                )

            checkpoint = Checkpoint(
                step=step,
                timestamp=utc_now(),
                outputs=tuple(outputs),
                metadata=metadata,
            )
            checkpoints = (*session.checkpoints, checkpoint)
            updated = self._updated(
                session,
                checkpoints=checkpoints,
                current_step=step_after(len(checkpoints)),
                outputs={**session.outputs, **(named_outputs or {})},
            )
            self._write(updated)

        logger.info(
            "Checkpoint saved",
            extra={"session_id": session.session_id, "step": step.value, "outputs": len(outputs)},
        )
        return updated

    def load_session(self, session_id: str) -> Session:
        """Load a session from disk.

        Raises:
            SessionError: If the session does not exist or its state is corrupted.
        """
        path = self.state_file(session_id)
        if not path.is_file():
            raise SessionError("session not found", session_id, path=path)
        try:
            state = read_model(path, SessionState)
        except ValidationError as exc:
            raise SessionError(f"corrupted session state ({exc.message})", session_id, path=path) from exc
        if state.session.session_id != session_id:
            raise SessionError(
                f"state file belongs to {state.session.session_id}", session_id, path=path
            )
        return state.session

    def resume_session(self, session_id: str) -> Session:
        """Load a session and make it runnable again.

        A session left ``in-progress`` (the process died mid-run) is returned as is.

        Raises:
            SessionError: If the session is unknown, corrupted, or already completed.
        """
        with self._lock:
            session = self.load_session(session_id)
            if session.status is SessionStatus.COMPLETED:
                raise SessionError("session is already completed", session_id)
            if session.status is not SessionStatus.IN_PROGRESS:
                session = self._transition(session, SessionStatus.IN_PROGRESS)
                self._write(session)

        logger.info(
            "Session resumed",
            extra={
                "session_id": session_id,
                "next_step": session.current_step.value if session.current_step else None,
                "checkpoints": len(session.checkpoints),
            },
        )
        return session

    def complete_session(self, session: Session) -> Session:
        with self._lock:
            if not session.is_complete:
                raise SessionError(
                    f"cannot complete with {len(session.checkpoints)}/{len(PIPELINE_STEPS)} checkpoints",
                    session.session_id,
                )
            session = self._transition(session, SessionStatus.COMPLETED)
            self._write(session)
        logger.info("Session completed", extra={"session_id": session.session_id})
        return session

    def pause_session(self, session: Session) -> Session:
        with self._lock:
            if session.status is SessionStatus.PAUSED:
                return session
            session = self._transition(session, SessionStatus.PAUSED)
            self._write(session)
        logger.info("Session paused", extra={"session_id": session.session_id})
        return session

    def fail_session(self, session: Session, error: BaseException) -> Session:
        """Mark the session failed and write an error record next to it.

        Existing error records are never overwritten; later failures are written
        as ``error-2.yaml``, ``error-3.yaml`` and so on.
        """
        with self._lock:
            failed = self._transition(session, SessionStatus.FAILED)
            record = ErrorRecord(
                session_id=session.session_id,
                step=session.current_step.value if session.current_step else None,
                code=error.code if isinstance(error, EngineError) else "UNEXPECTED",
                message=str(error),
                stack="".join(traceback.format_exception(error)),
                recoverable=error.recoverable if isinstance(error, EngineError) else True,
            )
            error_path = self._next_error_path(session.session_id)
            write_model(error_path, record)
            self._write(failed)

        logger.error(
            "Session failed",
            extra={
                "session_id": session.session_id,
                "step": record.step,
                "code": record.code,
                "error_file": str(error_path),
            },
        )
        return failed

    # -- inspection ---------------------------------------------------------

    def _error_files(self, session_id: str) -> list[tuple[int, Path]]:
        directory = self.session_dir(session_id)
        if not directory.is_dir():
            return []
        found = []
        for path in directory.iterdir():
            match = _ERROR_FILE_RE.match(path.name)
            if match:
                found.append((int(match.group(1) or 1), path))
        return sorted(found)

    def _next_error_path(self, session_id: str) -> Path:
        existing = self._error_files(session_id)
        if not existing:
            return self.session_dir(session_id) / ERROR_FILE_NAME
        return self.session_dir(session_id) / f"error-{existing[-1][0] + 1}.yaml"

    def error_records(self, session_id: str) -> list[ErrorRecord]:
        """All error records of a session, oldest first."""

        return [read_model(path, ErrorRecord) for _, path in self._error_files(session_id)]

    def list_session_ids(self) -> list[str]:
        if not self.sessions_dir.is_dir():
            return []
        return sorted(
            path.name
            for path in self.sessions_dir.iterdir()
            if path.is_dir() and _SESSION_DIR_RE.match(path.name)
        )
