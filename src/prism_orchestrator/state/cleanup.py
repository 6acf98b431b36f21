"""Retention cleanup of old session directories."""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from prism_orchestrator.core.errors import SessionError
from prism_orchestrator.orchestrator.workflow.state_machine import SessionStatus
from prism_orchestrator.state.session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
CLEANUP_INTERVAL_DAYS = 7
MARKER_FILE_NAME = ".last-cleanup"
_DAY_SECONDS = 24 * 60 * 60


@dataclass
class CleanupResult:
    deleted_count: int = 0
    freed_bytes: int = 0
    errors: list[str] = field(default_factory=list)


def _directory_size(path: Path) -> int:
    total = 0
    for item in path.rglob("*"):
        try:
            if item.is_file():
                total += item.stat().st_size
        except OSError:
            continue
    return total


def cleanup_old_sessions(
    store: SessionStore,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    *,
    now: float | None = None,
) -> CleanupResult:
    """Delete sessions whose state file is older than ``retention_days``.

    Sessions still ``in-progress`` are never deleted. Sessions whose state cannot
    be read are judged by the age of their directory.
    """
    if retention_days < 1:
        raise ValueError("retention_days must be at least 1")

    cutoff = (time.time() if now is None else now) - retention_days * _DAY_SECONDS
    result = CleanupResult()

    for session_id in store.list_session_ids():
        directory = store.session_dir(session_id)
        state_file = store.state_file(session_id)
        try:
            mtime = (state_file if state_file.exists() else directory).stat().st_mtime
        except OSError as exc:
            result.errors.append(f"{session_id}: {exc}")
            continue
        if mtime >= cutoff:
            continue

        try:
            status = store.load_session(session_id).status
        except SessionError:
            status = None
        if status is SessionStatus.IN_PROGRESS:
            continue

        size = _directory_size(directory)
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            result.errors.append(f"{session_id}: {exc}")
            logger.warning(f"Failed to delete session {session_id}: {exc}")
            continue
        result.deleted_count += 1
        result.freed_bytes += size
        logger.info("Deleted old session", extra={"session_id": session_id, "bytes": size})

    return result


def maybe_cleanup_sessions(
    workspace: Path,
    store: SessionStore,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    *,
    now: float | None = None,
) -> CleanupResult | None:
    """Run cleanup at most once every ``CLEANUP_INTERVAL_DAYS``.

    Returns None when skipped because the last run was recent.
    """
    current = time.time() if now is None else now
    marker = workspace / MARKER_FILE_NAME
    try:
        last_run = marker.stat().st_mtime
    except FileNotFoundError:
        last_run = None

    if last_run is not None and current - last_run < CLEANUP_INTERVAL_DAYS * _DAY_SECONDS:
        return None

    result = cleanup_old_sessions(store, retention_days, now=current)
    workspace.mkdir(parents=True, exist_ok=True)
    marker.touch()
    os.utime(marker, (current, current))
    return result
