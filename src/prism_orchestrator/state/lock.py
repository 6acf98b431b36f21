"""Workspace lock.

A single lock file inside the workspace guarantees at most one live run per
workspace. The holder keeps the file's mtime fresh from a heartbeat thread; a
lock whose mtime is older than the stale threshold is treated as abandoned and
may be cleared by the next contender.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
import threading
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from prism_orchestrator.core.errors import LockError, StorageError
from prism_orchestrator.orchestrator.workflow.deadline import CancellationSignal
from prism_orchestrator.state.models import utc_now

logger = logging.getLogger(__name__)

GUARD_SUFFIX = ".guard"
POLL_INTERVAL_SECONDS = 0.25


@dataclass
class LockHandle:
    """Proof of lock ownership; release only with the handle that acquired it."""

    path: Path
    token: str
    info: dict[str, Any]
    _stop: threading.Event = field(default_factory=threading.Event, repr=False)
    _thread: threading.Thread | None = field(default=None, repr=False)

    @property
    def released(self) -> bool:
        return self._stop.is_set()


class WorkspaceLock:
    """File-based mutual exclusion for one workspace directory."""

    def __init__(
        self,
        lock_path: Path,
        *,
        heartbeat_seconds: float = 5.0,
        stale_seconds: float = 10.0,
        session_id: str | None = None,
    ) -> None:
        if stale_seconds <= heartbeat_seconds:
            raise ValueError("stale_seconds must exceed heartbeat_seconds")
        self.lock_path = lock_path
        self.heartbeat_seconds = heartbeat_seconds
        self.stale_seconds = stale_seconds
        self.session_id = session_id
        self._guard_path = lock_path.with_name(lock_path.name + GUARD_SUFFIX)

    # -- inspection ---------------------------------------------------------

    def _age_seconds(self) -> float | None:
        try:
            return time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return None

    def is_stale(self) -> bool:
        """True when a lock file exists but its heartbeat stopped."""

        age = self._age_seconds()
        return age is not None and age > self.stale_seconds

    def is_locked(self) -> bool:
        """True when a live (non-stale) lock is held."""

        age = self._age_seconds()
        return age is not None and age <= self.stale_seconds

    def holder(self) -> dict[str, Any]:
        """Contents of the current lock file, or an empty dict."""

        try:
            data = json.loads(self.lock_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError):
            logger.warning("Unreadable workspace lock file", extra={"path": str(self.lock_path)})
            return {}
        return data if isinstance(data, dict) else {}

    # -- acquisition --------------------------------------------------------

    @contextmanager
    def _guard(self) -> Iterator[None]:
        self._guard_path.parent.mkdir(parents=True, exist_ok=True)
        with self._guard_path.open("a+", encoding="utf-8") as guard:
            fcntl.flock(guard.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(guard.fileno(), fcntl.LOCK_UN)

    def _create(self) -> LockHandle | None:
        token = uuid.uuid4().hex
        info = {
            "pid": os.getpid(),
            "token": token,
            "hostname": socket.gethostname(),
            "session_id": self.session_id,
            "acquired_at": utc_now().isoformat(),
        }
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None
        except OSError as exc:
            raise StorageError(f"Cannot create workspace lock ({exc.strerror})", self.lock_path) from exc
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(info, handle)
            handle.flush()
            os.fsync(handle.fileno())
        return LockHandle(path=self.lock_path, token=token, info=info)

    def _clear_stale_unguarded(self) -> bool:
        if not self.is_stale():
            return False
        previous = self.holder()
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            return False
        logger.warning(
            "Cleared stale workspace lock",
            extra={"path": str(self.lock_path), "previous_holder": previous},
        )
        return True

    def clear_stale(self) -> bool:
        """Remove the lock file if it is stale. Returns True if something was removed."""

        with self._guard():
            return self._clear_stale_unguarded()

    def acquire(self) -> LockHandle | None:
        """Try to take the lock without waiting.

        A stale lock is cleared and acquisition retried once. Returns ``None``
        if a live lock is held by someone else.
        """
        with self._guard():
            handle = self._create()
            if handle is None and self._clear_stale_unguarded():
                handle = self._create()

        if handle is None:
            logger.info("Workspace is locked", extra={"holder": self.holder()})
            return None

        self._start_heartbeat(handle)
        logger.info(
            "Acquired workspace lock",
            extra={"path": str(self.lock_path), "session_id": self.session_id},
        )
        return handle

    def _start_heartbeat(self, handle: LockHandle) -> None:
        thread = threading.Thread(
            target=self._heartbeat,
            args=(handle,),
            name="workspace-lock-heartbeat",
            daemon=True,
        )
        handle._thread = thread
        thread.start()

    def _owns(self, handle: LockHandle) -> bool:
        return self.holder().get("token") == handle.token

    def _heartbeat(self, handle: LockHandle) -> None:
        while not handle._stop.wait(self.heartbeat_seconds):
            if not self._owns(handle):
                logger.warning("Workspace lock lost; stopping heartbeat", extra={"path": str(handle.path)})
                return
            try:
                os.utime(handle.path)
            except FileNotFoundError:
                return
            except OSError as exc:
                logger.warning(f"Lock heartbeat failed: {exc}", extra={"path": str(handle.path)})

    def release(self, handle: LockHandle) -> None:
        """Release the lock. Only unlinks a lock file that still carries the handle's token."""

        if handle.released:
            return
        handle._stop.set()
        if handle._thread is not None and handle._thread is not threading.current_thread():
            handle._thread.join(timeout=self.heartbeat_seconds)

        with self._guard():
            if not self._owns(handle):
                logger.warning("Workspace lock no longer ours; leaving it in place")
                return
            try:
                self.lock_path.unlink()
            except FileNotFoundError:
                return
        logger.info("Released workspace lock", extra={"path": str(self.lock_path)})

    # -- waiting ------------------------------------------------------------

    def wait_for(self, timeout_seconds: float, signal: CancellationSignal | None = None) -> bool:
        """Wait until the lock is free or stale.

        Returns True once acquisition can be attempted, False on timeout.
        Raises ``WorkflowCancelled`` if ``signal`` fires while waiting.
        """
        deadline = time.monotonic() + timeout_seconds
        while True:
            if signal is not None:
                signal.raise_if_cancelled()
            if not self.is_locked():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            pause = min(POLL_INTERVAL_SECONDS, remaining)
            if signal is not None:
                signal.wait(pause)
            else:
                time.sleep(pause)

    def acquire_or_wait(
        self, timeout_seconds: float = 0.0, signal: CancellationSignal | None = None
    ) -> LockHandle:
        """Acquire the lock, waiting up to ``timeout_seconds`` for a live holder to leave.

        Raises:
            LockError: If the lock is still held when the wait ends.
        """
        deadline = time.monotonic() + timeout_seconds
        while True:
            handle = self.acquire()
            if handle is not None:
                return handle
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not self.wait_for(remaining, signal):
                holder = self.holder()
                raise LockError(
                    f"Workspace is locked by pid {holder.get('pid', '?')} "
                    f"(session {holder.get('session_id') or 'unknown'})",
                    self.lock_path,
                    holder,
                )

    @contextmanager
    def hold(
        self, timeout_seconds: float = 0.0, signal: CancellationSignal | None = None
    ) -> Iterator[LockHandle]:
        handle = self.acquire_or_wait(timeout_seconds, signal)
        try:
            yield handle
        finally:
            self.release(handle)
