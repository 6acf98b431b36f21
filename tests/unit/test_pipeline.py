"""Unit tests for the pipeline orchestrator."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from prism_orchestrator.core.errors import LockError, WorkflowCancelled, WorkflowError
from prism_orchestrator.orchestrator.workflow.deadline import CancellationSignal
from prism_orchestrator.orchestrator.workflow.pipeline import PipelineOrchestrator, StepResult
from prism_orchestrator.orchestrator.workflow.state_machine import (
    PIPELINE_STEPS,
    SessionStatus,
    WorkflowStep,
)
from prism_orchestrator.orchestrator.workflow.steps import default_steps
from prism_orchestrator.state.atomic import write_atomic
from prism_orchestrator.state.lock import WorkspaceLock
from prism_orchestrator.state.metrics import MetricsLog
from prism_orchestrator.state.models import CheckpointMetadata, Session, SessionConfig
from prism_orchestrator.state.session_store import SessionStore


@dataclass
class FakeStep:
    """Writes one file; optionally fails, blocks, or runs a hook first."""

    name: WorkflowStep
    session_dir: Path
    calls: list[WorkflowStep]
    fail_with: BaseException | None = None
    before: Callable[[CancellationSignal], None] | None = None
    seen_outputs: list[dict[str, str]] = field(default_factory=list)

    def execute(self, prior_outputs: Mapping[str, str], signal: CancellationSignal) -> StepResult:
        self.calls.append(self.name)
        self.seen_outputs.append(dict(prior_outputs))
        if self.before is not None:
            self.before(signal)
        if self.fail_with is not None:
            raise self.fail_with
        relative = f"{self.name.directory}/out.md"
        write_atomic(self.session_dir / relative, self.name.value)
        return StepResult(
            output_paths=(relative,),
            provider_used="A",
            named_outputs={self.name.value: relative},
            estimated_cost=0.5,
        )


def _steps(
    store: SessionStore, session: Session, calls: list[WorkflowStep], **overrides: dict
) -> list[FakeStep]:
    session_dir = store.session_dir(session.session_id)
    return [FakeStep(step, session_dir, calls, **overrides.get(step.value, {})) for step in PIPELINE_STEPS]


def _new_session(store: SessionStore, session_config: SessionConfig) -> Session:
    return store.init_session({"prd_source": "prd.md"}, session_config)


def test_full_run_completes(store: SessionStore, session_config: SessionConfig, workspace: Path) -> None:
    calls: list[WorkflowStep] = []
    metrics = MetricsLog(workspace / "metrics.log")
    session = _new_session(store, session_config)

    result = PipelineOrchestrator(store, _steps(store, session, calls), metrics=metrics).run(session)

    assert result.status is SessionStatus.COMPLETED
    assert calls == list(PIPELINE_STEPS)
    loaded = store.load_session(session.session_id)
    assert loaded.status is SessionStatus.COMPLETED
    assert len(loaded.checkpoints) == 5
    assert loaded.checkpoints[0].metadata.provider_used == "A"
    assert loaded.outputs["tdd-generation"] == "05-tdd/out.md"
    assert [e["event"] for e in metrics.read()][-1] == "session_completed"


def test_later_steps_see_earlier_outputs(store: SessionStore, session_config: SessionConfig) -> None:
    calls: list[WorkflowStep] = []
    session = _new_session(store, session_config)
    steps = _steps(store, session, calls)

    PipelineOrchestrator(store, steps).run(session)

    assert steps[2].seen_outputs[0]["prd-analysis"] == "01-prd-analysis/out.md"
    assert steps[2].seen_outputs[0]["prd_source"] == "prd.md"


def test_failure_persists_failed_then_resume_skips_done_steps(
    store: SessionStore, session_config: SessionConfig
) -> None:
    calls: list[WorkflowStep] = []
    session = _new_session(store, session_config)
    failing = _steps(store, session, calls, validation={"fail_with": RuntimeError("provider down")})

    with pytest.raises(WorkflowError) as exc_info:
        PipelineOrchestrator(store, failing).run(session)

    assert exc_info.value.step == "validation"
    assert isinstance(exc_info.value.cause, RuntimeError)
    failed = store.load_session(session.session_id)
    assert failed.status is SessionStatus.FAILED
    assert len(failed.checkpoints) == 2
    assert (store.session_dir(session.session_id) / "error.yaml").is_file()
    [record] = store.error_records(session.session_id)
    assert record.code == "WORKFLOW_ERROR"
    assert record.step == "validation"
    assert "provider down" in record.message
    assert "RuntimeError: provider down" in record.stack

    calls.clear()
    resumed = store.resume_session(session.session_id)
    result = PipelineOrchestrator(store, _steps(store, session, calls)).run(resumed)

    assert result.status is SessionStatus.COMPLETED
    assert calls == list(PIPELINE_STEPS[2:])
    assert result.checkpoints[:2] == failed.checkpoints


def test_resume_after_crash(store: SessionStore, session_config: SessionConfig) -> None:
    session = _new_session(store, session_config)
    meta = CheckpointMetadata(duration_ms=1, provider_used="A")
    for step in PIPELINE_STEPS[:2]:
        session = store.save_checkpoint(session, step, [f"{step.directory}/out.md"], meta)
    # The process died here: status is still in-progress.

    calls: list[WorkflowStep] = []
    orchestrator = PipelineOrchestrator(store, _steps(store, session, calls))
    result = orchestrator.run(store.load_session(session.session_id))

    assert calls == list(PIPELINE_STEPS[2:])
    assert result.status is SessionStatus.COMPLETED
    assert result.checkpoints[:2] == session.checkpoints


def test_completed_session_is_not_rerun(store: SessionStore, session_config: SessionConfig) -> None:
    calls: list[WorkflowStep] = []
    session = _new_session(store, session_config)
    PipelineOrchestrator(store, _steps(store, session, calls)).run(session)
    calls.clear()

    result = PipelineOrchestrator(store, _steps(store, session, calls)).run(session)

    assert result.status is SessionStatus.COMPLETED
    assert calls == []


def _wait_for_cancel(signal: CancellationSignal) -> None:
    signal.wait(5.0)
    signal.raise_if_cancelled()


def test_deadline_pauses_session(store: SessionStore, session_config: SessionConfig, workspace: Path) -> None:
    calls: list[WorkflowStep] = []
    metrics = MetricsLog(workspace / "metrics.log")
    session = _new_session(store, session_config)
    steps = _steps(store, session, calls, validation={"before": _wait_for_cancel})

    result = PipelineOrchestrator(store, steps, metrics=metrics, timeout_seconds=1.0).run(session)

    assert result.status is SessionStatus.PAUSED
    on_disk = store.load_session(session.session_id)
    assert on_disk.status is SessionStatus.PAUSED
    assert on_disk.current_step is WorkflowStep.VALIDATION
    assert len(on_disk.checkpoints) == 2
    assert "session_paused" in [e["event"] for e in metrics.read()]


def test_step_finishing_after_pause_is_not_checkpointed(
    store: SessionStore, session_config: SessionConfig
) -> None:
    calls: list[WorkflowStep] = []
    session = _new_session(store, session_config)

    def _ignore_signal(_signal: CancellationSignal) -> None:
        time.sleep(1.0)

    steps = _steps(store, session, calls, **{"figma-analysis": {"before": _ignore_signal}})

    result = PipelineOrchestrator(store, steps, timeout_seconds=0.5).run(session)

    assert result.status is SessionStatus.PAUSED
    on_disk = store.load_session(session.session_id)
    assert [cp.step for cp in on_disk.checkpoints] == [WorkflowStep.PRD_ANALYSIS]
    assert on_disk.status is SessionStatus.PAUSED
    assert calls == list(PIPELINE_STEPS[:2])


def test_interrupt_pauses_and_resume_continues(
    store: SessionStore, session_config: SessionConfig
) -> None:
    calls: list[WorkflowStep] = []
    session = _new_session(store, session_config)
    holder: list[PipelineOrchestrator] = []

    def _interrupt(signal: CancellationSignal) -> None:
        holder[0].interrupt("Interrupted by SIGINT")
        signal.raise_if_cancelled()

    steps = _steps(store, session, calls, clarification={"before": _interrupt})
    orchestrator = PipelineOrchestrator(store, steps)
    holder.append(orchestrator)

    paused = orchestrator.run(session)

    assert paused.status is SessionStatus.PAUSED
    assert paused.current_step is WorkflowStep.CLARIFICATION

    calls.clear()
    resumed = store.resume_session(session.session_id)
    result = PipelineOrchestrator(store, _steps(store, session, calls)).run(resumed)
    assert result.status is SessionStatus.COMPLETED
    assert calls == [WorkflowStep.CLARIFICATION, WorkflowStep.TDD_GENERATION]


def test_run_holds_workspace_lock(store: SessionStore, session_config: SessionConfig, workspace: Path) -> None:
    lock_path = workspace / ".workspace.lock"
    seen: list[dict] = []

    def _peek(_signal: CancellationSignal) -> None:
        seen.append(json.loads(lock_path.read_text(encoding="utf-8")))

    calls: list[WorkflowStep] = []
    session = _new_session(store, session_config)
    lock = WorkspaceLock(lock_path, session_id=session.session_id)

    steps = _steps(store, session, calls, validation={"before": _peek})
    PipelineOrchestrator(store, steps, lock=lock).run(session)

    assert seen[0]["session_id"] == session.session_id
    assert not lock_path.exists()


def test_locked_workspace_refuses_to_run(
    store: SessionStore, session_config: SessionConfig, workspace: Path
) -> None:
    calls: list[WorkflowStep] = []
    session = store.pause_session(_new_session(store, session_config))
    other = WorkspaceLock(workspace / ".workspace.lock")
    handle = other.acquire()
    assert handle is not None
    try:
        with pytest.raises(LockError):
            PipelineOrchestrator(
                store, _steps(store, session, calls), lock=WorkspaceLock(workspace / ".workspace.lock")
            ).run(session)
    finally:
        other.release(handle)

    assert calls == []
    assert store.load_session(session.session_id).status is SessionStatus.PAUSED


def test_interrupt_while_waiting_for_lock_leaves_session_untouched(
    store: SessionStore, session_config: SessionConfig, workspace: Path
) -> None:
    calls: list[WorkflowStep] = []
    session = store.pause_session(_new_session(store, session_config))
    other = WorkspaceLock(workspace / ".workspace.lock")
    handle = other.acquire()
    assert handle is not None
    orchestrator = PipelineOrchestrator(
        store,
        _steps(store, session, calls),
        lock=WorkspaceLock(workspace / ".workspace.lock"),
        lock_wait_seconds=10.0,
    )
    timer = threading.Timer(0.2, orchestrator.interrupt, args=("Interrupted by SIGINT",))

    started = time.monotonic()
    timer.start()
    try:
        with pytest.raises(WorkflowCancelled):
            orchestrator.run(session)
    finally:
        timer.cancel()
        other.release(handle)

    assert time.monotonic() - started < 5.0
    assert calls == []
    assert store.load_session(session.session_id).status is SessionStatus.PAUSED


def test_interrupt_before_run_pauses_without_running_steps(
    store: SessionStore, session_config: SessionConfig
) -> None:
    calls: list[WorkflowStep] = []
    session = _new_session(store, session_config)
    orchestrator = PipelineOrchestrator(store, _steps(store, session, calls))

    orchestrator.interrupt("Interrupted by SIGTERM")
    result = orchestrator.run(session)

    assert result.status is SessionStatus.PAUSED
    assert calls == []
    assert result.checkpoints == ()


class _InterruptOnFirstCheckpoint(SessionStore):
    """Interrupts the orchestrator from inside the first checkpoint write."""

    def __init__(self, sessions_dir: Path, orchestrators: list[PipelineOrchestrator]) -> None:
        super().__init__(sessions_dir)
        self.orchestrators = orchestrators
        self.fired = False

    def _write(self, session: Session) -> None:
        if session.checkpoints and not self.fired:
            self.fired = True
            self.orchestrators[0].interrupt("Interrupted by SIGINT")
        super()._write(session)


def test_interrupt_during_checkpoint_write_pauses(workspace: Path, session_config: SessionConfig) -> None:
    holder: list[PipelineOrchestrator] = []
    store = _InterruptOnFirstCheckpoint(workspace / "sessions", holder)
    calls: list[WorkflowStep] = []
    session = _new_session(store, session_config)
    orchestrator = PipelineOrchestrator(store, _steps(store, session, calls))
    holder.append(orchestrator)

    result = orchestrator.run(session)

    assert result.status is SessionStatus.PAUSED
    on_disk = store.load_session(session.session_id)
    assert on_disk.status is SessionStatus.PAUSED
    assert [cp.step for cp in on_disk.checkpoints] == [WorkflowStep.PRD_ANALYSIS]
    assert on_disk.current_step is WorkflowStep.FIGMA_ANALYSIS
    assert calls == [WorkflowStep.PRD_ANALYSIS]


def test_steps_must_cover_pipeline(store: SessionStore, session_config: SessionConfig) -> None:
    session = _new_session(store, session_config)

    with pytest.raises(ValueError):
        PipelineOrchestrator(store, _steps(store, session, [])[:3])


def test_rate_limit_fallback_recorded_in_checkpoint(
    store: SessionStore,
    session_config: SessionConfig,
    make_provider: Callable,
    make_selector: Callable,
    tmp_path: Path,
) -> None:
    prd = tmp_path / "prd.md"
    prd.write_text("# Checkout\nUsers pay with a card.", encoding="utf-8")
    a = make_provider("A", [RuntimeError("429 Rate limit exceeded") for _ in range(4)])
    b = make_provider("B", default="generated")
    selector = make_selector([a, b], max_retries=3, base_delay=0.0)
    session = store.init_session({"prd_source": str(prd)}, session_config)

    result = PipelineOrchestrator(
        store,
        default_steps(selector, store.session_dir(session.session_id)),
        selector=selector,
    ).run(session)

    assert result.status is SessionStatus.COMPLETED
    assert result.checkpoints[0].metadata.provider_used == "B"
    assert result.checkpoints[1].outputs == ()
    assert result.checkpoints[1].metadata.provider_used is None
    assert "Users pay with a card." in b.prompts[0]
    tdd = store.session_dir(session.session_id) / result.outputs["tdd"]
    assert tdd.read_text(encoding="utf-8") == "generated"
