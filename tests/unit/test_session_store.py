"""Unit tests for session persistence and lifecycle."""

from __future__ import annotations

import time

import pytest

from prism_orchestrator.core.errors import ProviderError, SessionError, ValidationError
from prism_orchestrator.orchestrator.workflow.state_machine import (
    PIPELINE_STEPS,
    SessionStatus,
    WorkflowStep,
)
from prism_orchestrator.state.models import CheckpointMetadata, Session, SessionConfig
from prism_orchestrator.state.session_store import SessionStore

META = CheckpointMetadata(duration_ms=5, provider_used="A", estimated_cost=0.0)


def _advance(store: SessionStore, session: Session, count: int) -> Session:
    for step in PIPELINE_STEPS[:count]:
        session = store.save_checkpoint(session, step, [f"{step.directory}/out.md"], META)
    return session


def test_init_session_creates_layout(store: SessionStore, session_config: SessionConfig) -> None:
    session = store.init_session({"prd_source": "prd.md"}, session_config)

    assert session.session_id.startswith("sess-")
    assert len(session.session_id) == len("sess-") + 13
    assert session.status is SessionStatus.IN_PROGRESS
    assert session.current_step is WorkflowStep.PRD_ANALYSIS
    assert store.state_file(session.session_id).is_file()
    for step in PIPELINE_STEPS:
        assert store.step_dir(session.session_id, step).is_dir()
    assert store.load_session(session.session_id) == session


def test_init_session_requires_prd_source(store: SessionStore, session_config: SessionConfig) -> None:
    with pytest.raises(ValidationError):
        store.init_session({"prd_source": "  "}, session_config)


def test_session_ids_unique_within_one_millisecond(
    store: SessionStore, session_config: SessionConfig, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(time, "time", lambda: 1_700_000_000.0)

    first = store.init_session({"prd_source": "a"}, session_config)
    second = SessionStore(store.sessions_dir).init_session({"prd_source": "b"}, session_config)

    assert first.session_id != second.session_id
    assert store.list_session_ids() == sorted([first.session_id, second.session_id])


def test_checkpoints_advance_in_order(store: SessionStore, session_config: SessionConfig) -> None:
    session = store.init_session({"prd_source": "prd.md"}, session_config)

    session = store.save_checkpoint(
        session,
        WorkflowStep.PRD_ANALYSIS,
        ["01-prd-analysis/requirements.md"],
        META,
        named_outputs={"requirements": "01-prd-analysis/requirements.md"},
    )

    loaded = store.load_session(session.session_id)
    assert loaded.current_step is WorkflowStep.FIGMA_ANALYSIS
    assert [cp.step for cp in loaded.checkpoints] == [WorkflowStep.PRD_ANALYSIS]
    assert loaded.outputs == {"requirements": "01-prd-analysis/requirements.md"}
    assert loaded.updated_at >= loaded.created_at


def test_duplicate_and_out_of_order_checkpoints_rejected(
    store: SessionStore, session_config: SessionConfig
) -> None:
    session = store.init_session({"prd_source": "prd.md"}, session_config)
    session = _advance(store, session, 1)

    with pytest.raises(SessionError, match="already has a checkpoint"):
        store.save_checkpoint(session, WorkflowStep.PRD_ANALYSIS, [], META)
    with pytest.raises(SessionError, match="out of order"):
        store.save_checkpoint(session, WorkflowStep.VALIDATION, [], META)

    assert len(store.load_session(session.session_id).checkpoints) == 1


def test_complete_requires_every_step(store: SessionStore, session_config: SessionConfig) -> None:
    session = store.init_session({"prd_source": "prd.md"}, session_config)
    partial = _advance(store, session, 4)

    with pytest.raises(SessionError):
        store.complete_session(partial)

    finished = store.save_checkpoint(partial, WorkflowStep.TDD_GENERATION, ["05-tdd/TDD.md"], META)
    done = store.complete_session(finished)
    assert done.status is SessionStatus.COMPLETED
    assert done.current_step is None


def test_load_missing_session(store: SessionStore) -> None:
    with pytest.raises(SessionError) as exc_info:
        store.load_session("sess-1700000000000")

    assert exc_info.value.path is not None


def test_load_corrupted_session(store: SessionStore, session_config: SessionConfig) -> None:
    session = store.init_session({"prd_source": "prd.md"}, session_config)
    store.state_file(session.session_id).write_text("version: '1.0'\nsession: {", encoding="utf-8")

    with pytest.raises(SessionError, match="corrupted"):
        store.load_session(session.session_id)


def test_resume_transitions(store: SessionStore, session_config: SessionConfig) -> None:
    session = store.init_session({"prd_source": "prd.md"}, session_config)
    store.pause_session(session)

    resumed = store.resume_session(session.session_id)

    assert resumed.status is SessionStatus.IN_PROGRESS
    assert store.load_session(session.session_id).status is SessionStatus.IN_PROGRESS


def test_resume_completed_session_fails(store: SessionStore, session_config: SessionConfig) -> None:
    session = store.init_session({"prd_source": "prd.md"}, session_config)
    store.complete_session(_advance(store, session, len(PIPELINE_STEPS)))

    with pytest.raises(SessionError, match="already completed"):
        store.resume_session(session.session_id)


def test_illegal_transition_is_session_error(
    store: SessionStore, session_config: SessionConfig
) -> None:
    session = store.init_session({"prd_source": "prd.md"}, session_config)
    failed = store.fail_session(session, RuntimeError("boom"))

    with pytest.raises(SessionError):
        store.pause_session(failed)


def test_fail_session_never_overwrites_error_records(
    store: SessionStore, session_config: SessionConfig
) -> None:
    session = store.init_session({"prd_source": "prd.md"}, session_config)
    session = _advance(store, session, 2)

    store.fail_session(session, ProviderError("rate limited", "A", is_transient=True))
    again = store.resume_session(session.session_id)
    store.fail_session(again, RuntimeError("disk on fire"))

    directory = store.session_dir(session.session_id)
    assert (directory / "error.yaml").is_file()
    assert (directory / "error-2.yaml").is_file()

    records = store.error_records(session.session_id)
    assert [r.code for r in records] == ["PROVIDER_ERROR", "UNEXPECTED"]
    assert records[0].step == "validation"
    assert records[0].recoverable is True
    assert "RuntimeError" in (records[1].stack or "")
    assert store.load_session(session.session_id).status is SessionStatus.FAILED
