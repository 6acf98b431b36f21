"""CLI entrypoint for the workflow engine."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import yaml
from pydantic import ValidationError

from prism_orchestrator import __version__
from prism_orchestrator.core.config import KNOWN_PROVIDERS, EngineSettings, default_config_file
from prism_orchestrator.core.errors import (
    ConfigurationError,
    EngineError,
    LockError,
    SessionError,
    WorkflowCancelled,
    WorkflowError,
    format_error,
)
from prism_orchestrator.llm.selector import FallbackEvent, ProviderSelector
from prism_orchestrator.orchestrator.logging import configure_logging
from prism_orchestrator.orchestrator.workflow.pipeline import PipelineOrchestrator
from prism_orchestrator.orchestrator.workflow.state_machine import PIPELINE_STEPS, SessionStatus
from prism_orchestrator.orchestrator.workflow.steps import default_steps
from prism_orchestrator.state.atomic import read_yaml, write_yaml
from prism_orchestrator.state.cleanup import cleanup_old_sessions, maybe_cleanup_sessions
from prism_orchestrator.state.codec import dump_yaml
from prism_orchestrator.state.lock import WorkspaceLock
from prism_orchestrator.state.metrics import MetricsLog
from prism_orchestrator.state.models import Session, SessionConfig
from prism_orchestrator.state.session_store import SessionStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_WORKFLOW_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_LOCKED = 3
EXIT_SESSION_ERROR = 4
EXIT_PAUSED = 5
EXIT_INTERRUPTED = 130

SECRET_SETTINGS = frozenset({"anthropic_api_key", "openai_api_key"})


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prism",
        description="Resumable PRD-to-TDD workflow engine",
    )
    parser.add_argument("--version", action="version", version=f"prism-orchestrator {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    start = subparsers.add_parser("start", help="Start a new session and run the pipeline")
    start.add_argument("--prd", required=True, help="PRD source (file path or URL)")
    start.add_argument("--figma", default=None, help="Optional design source (file path or URL)")
    start.add_argument(
        "--timeout-minutes",
        type=_positive_int,
        default=None,
        help="Wall-clock budget for this run (default from WORKFLOW_TIMEOUT_MINUTES)",
    )
    start.add_argument(
        "--provider",
        choices=KNOWN_PROVIDERS,
        default=None,
        help="Preferred provider; the fallback chain starts here",
    )

    resume = subparsers.add_parser("resume", help="Resume a paused, failed or interrupted session")
    resume.add_argument("session_id", help="Session ID, e.g. sess-1700000000000")

    subparsers.add_parser("list-sessions", help="List sessions and their progress")

    cleanup = subparsers.add_parser("cleanup", help="Delete old finished sessions")
    cleanup.add_argument(
        "--retention-days",
        type=_positive_int,
        default=None,
        help="Keep sessions newer than this many days (default from settings)",
    )

    config = subparsers.add_parser("config", help="Show or change config.yaml")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the effective configuration")
    config_set = config_sub.add_parser("set", help="Set one key in config.yaml")
    config_set.add_argument("key", help="Setting name, e.g. max_retries")
    config_set.add_argument("value", help="New value (parsed as YAML)")

    return parser


def _session_config(settings: EngineSettings) -> SessionConfig:
    return SessionConfig(
        ai_provider=settings.ai_provider,
        provider_order=tuple(settings.effective_provider_order()),
        workflow_timeout_minutes=settings.timeout_minutes,
        max_retries=settings.max_retries,
        max_fallbacks=settings.max_fallbacks,
        max_clarification_iterations=settings.max_clarification_iterations,
    )


def _workspace_lock(settings: EngineSettings, session_id: str | None = None) -> WorkspaceLock:
    return WorkspaceLock(
        settings.lock_file,
        heartbeat_seconds=settings.lock_heartbeat_seconds,
        stale_seconds=settings.lock_stale_seconds,
        session_id=session_id,
    )


def _build_orchestrator(
    settings: EngineSettings,
    store: SessionStore,
    metrics: MetricsLog,
    session: Session,
    *,
    lock: WorkspaceLock | None,
) -> PipelineOrchestrator:
    def _on_fallback(event: FallbackEvent) -> None:
        metrics.record(
            "provider_fallback",
            session_id=session.session_id,
            failed_provider=event.failed_provider,
            active_provider=event.active_provider,
            reason=event.reason,
        )

    selector = ProviderSelector.from_settings(settings, session.config, on_fallback=_on_fallback)
    return PipelineOrchestrator(
        store,
        default_steps(selector, store.session_dir(session.session_id)),
        selector=selector,
        metrics=metrics,
        lock=lock,
        timeout_seconds=session.config.workflow_timeout_minutes * 60.0,
        lock_wait_seconds=settings.lock_wait_seconds,
    )


@contextmanager
def _interrupts_pause(orchestrator: PipelineOrchestrator) -> Iterator[None]:
    """Route SIGINT/SIGTERM to a graceful pause of the running session."""

    def _handler(signum: int, _frame: Any) -> None:
        name = signal.Signals(signum).name
        logger.warning(f"Received {name}, pausing session")
        orchestrator.interrupt(f"Interrupted by {name}")

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _run(orchestrator: PipelineOrchestrator, session: Session) -> int:
    with _interrupts_pause(orchestrator):
        result = orchestrator.run(session)

    if result.status is SessionStatus.PAUSED:
        step = result.current_step.value if result.current_step else "done"
        print(f"Session {result.session_id} paused before {step}")
        print(f"Resume with: prism resume {result.session_id}")
        return EXIT_PAUSED

    print(f"Session {result.session_id} completed")
    for name, path in result.outputs.items():
        print(f"  {name}: {path}")
    return EXIT_OK


def _cmd_start(args: argparse.Namespace, settings: EngineSettings) -> int:
    overrides: dict[str, Any] = {}
    if args.provider:
        overrides["ai_provider"] = args.provider
    if args.timeout_minutes:
        overrides["timeout_minutes"] = args.timeout_minutes
    if overrides:
        settings = settings.model_copy(update=overrides)

    store = SessionStore(settings.sessions_dir)
    inputs = {"prd_source": args.prd}
    if args.figma:
        inputs["figma_source"] = args.figma

    metrics = MetricsLog(settings.metrics_file)
    config = _session_config(settings)
    # Fail on missing credentials before a session directory is created.
    ProviderSelector.from_settings(settings, config)

    # Session creation and the run share one lock hold.
    with _workspace_lock(settings).hold(settings.lock_wait_seconds):
        maybe_cleanup_sessions(settings.workspace_path, store, settings.retention_days)
        session = store.init_session(inputs, config)
        print(f"Session: {session.session_id}")
        orchestrator = _build_orchestrator(settings, store, metrics, session, lock=None)
        return _run(orchestrator, session)


def _cmd_resume(args: argparse.Namespace, settings: EngineSettings) -> int:
    store = SessionStore(settings.sessions_dir)
    session = store.load_session(args.session_id)
    if session.status is SessionStatus.COMPLETED:
        raise SessionError("session is already completed", session.session_id)
    print(
        f"Resuming {session.session_id} at "
        f"{session.current_step.value if session.current_step else 'completion'} "
        f"({len(session.checkpoints)}/{len(PIPELINE_STEPS)} steps done)"
    )
    metrics = MetricsLog(settings.metrics_file)
    # The orchestrator switches the session back to in-progress once it holds the lock.
    lock = _workspace_lock(settings, session.session_id)
    return _run(_build_orchestrator(settings, store, metrics, session, lock=lock), session)


def _cmd_list_sessions(settings: EngineSettings) -> int:
    store = SessionStore(settings.sessions_dir)
    session_ids = store.list_session_ids()
    if not session_ids:
        print("No sessions found")
        return EXIT_OK

    for session_id in session_ids:
        try:
            session = store.load_session(session_id)
        except SessionError as e:
            print(f"{session_id}  unreadable  {e.message}")
            continue
        step = session.current_step.value if session.current_step else "-"
        print(
            f"{session_id}  {session.status.value:<11}  step={step:<15} "
            f"checkpoints={len(session.checkpoints)}/{len(PIPELINE_STEPS)}"
        )
        if session.status is not SessionStatus.COMPLETED:
            print(f"    resume: prism resume {session_id}")
    return EXIT_OK


def _cmd_cleanup(args: argparse.Namespace, settings: EngineSettings) -> int:
    store = SessionStore(settings.sessions_dir)
    result = cleanup_old_sessions(store, args.retention_days or settings.retention_days)
    print(f"Deleted {result.deleted_count} session(s), freed {result.freed_bytes} bytes")
    for error in result.errors:
        print(f"  failed: {error}", file=sys.stderr)
    return EXIT_OK if not result.errors else EXIT_SESSION_ERROR


def _redacted_settings(settings: EngineSettings) -> dict[str, Any]:
    data = settings.model_dump(mode="json")
    for key in SECRET_SETTINGS:
        data[key] = "<set>" if data.get(key) else None
    return data


def _cmd_config(args: argparse.Namespace, settings: EngineSettings) -> int:
    if args.config_command == "show":
        print(dump_yaml(_redacted_settings(settings)), end="")
        return EXIT_OK

    key = args.key
    if key not in EngineSettings.model_fields:
        raise ConfigurationError("unknown setting", key)
    if key in SECRET_SETTINGS:
        raise ConfigurationError("secrets belong in the environment or .env, not config.yaml", key)

    value = yaml.safe_load(args.value)
    try:
        EngineSettings(**{key: value})
    except ValidationError as e:
        raise ConfigurationError(str(e.errors(include_url=False)[0]["msg"]), key) from e

    path = default_config_file()
    data = read_yaml(path) if path.exists() else {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping", key)
    data[key] = value
    write_yaml(path, data)
    print(f"Set {key} = {value!r} in {path}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env or config.yaml):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG_ERROR

    configure_logging(settings.log_level)

    try:
        if args.command == "start":
            return _cmd_start(args, settings)
        if args.command == "resume":
            return _cmd_resume(args, settings)
        if args.command == "list-sessions":
            return _cmd_list_sessions(settings)
        if args.command == "cleanup":
            return _cmd_cleanup(args, settings)
        if args.command == "config":
            return _cmd_config(args, settings)

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_CONFIG_ERROR

    except ConfigurationError as e:
        print(format_error(e), file=sys.stderr)
        return EXIT_CONFIG_ERROR

    except LockError as e:
        print(format_error(e), file=sys.stderr)
        return EXIT_LOCKED

    except SessionError as e:
        print(format_error(e), file=sys.stderr)
        return EXIT_SESSION_ERROR

    except WorkflowError as e:
        print(format_error(e), file=sys.stderr)
        return EXIT_WORKFLOW_FAILED

    except WorkflowCancelled as e:
        print(format_error(e), file=sys.stderr)
        return EXIT_INTERRUPTED

    except EngineError as e:
        logger.error("Command failed", extra={"code": e.code})
        print(format_error(e), file=sys.stderr)
        return EXIT_WORKFLOW_FAILED

    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return EXIT_INTERRUPTED

    except Exception:
        logger.exception("Command failed")
        return EXIT_WORKFLOW_FAILED


if __name__ == "__main__":
    raise SystemExit(main())
