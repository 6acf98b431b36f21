"""Workflow deadline and cooperative cancellation.

A ``DeadlineController`` arms a wall-clock timer for one pipeline run. When it
expires, the registered callback (which persists a paused session) runs to
completion first and only then is the cancellation signal set, so any code
that observes the signal can rely on the paused state already being on disk.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from enum import Enum
from typing import Any, TypeVar

from prism_orchestrator.core.errors import WorkflowCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_MINUTES = 30


class CancellationSignal:
    """Read-mostly cancellation token backed by ``threading.Event``."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    @property
    def reason(self) -> str | None:
        return self._reason

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float | None) -> bool:
        """Block up to ``seconds``; True if the signal fired."""

        return self._event.wait(seconds)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise WorkflowCancelled(self._reason or "Workflow cancelled")

    def cancel(self, reason: str) -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()


class DeadlineState(str, Enum):
    ARMED = "armed"
    RUNNING = "running"
    FIRING = "firing"
    COMPLETED = "completed"
    TIMED_OUT = "timed-out"
    ABORTED = "aborted"


class DeadlineController:
    """Arms a one-shot timer for a workflow run."""

    def __init__(self, timeout_seconds: float) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        self._signal = CancellationSignal()
        self._state = DeadlineState.ARMED
        self._lock = threading.RLock()
        self._timer: threading.Timer | None = None
        self._on_timeout: Callable[[], None] | None = None

    @classmethod
    def from_minutes(cls, minutes: float = DEFAULT_TIMEOUT_MINUTES) -> DeadlineController:
        return cls(minutes * 60.0)

    @property
    def state(self) -> DeadlineState:
        return self._state

    def get_signal(self) -> CancellationSignal:
        return self._signal

    def is_aborted(self) -> bool:
        return self._signal.is_set()

    def start(self, on_timeout: Callable[[], None] | None = None) -> None:
        """Start the timer. ``on_timeout`` runs before the signal is set.

        Does nothing if the run was aborted before it started.
        """
        with self._lock:
            if self._state is DeadlineState.ABORTED:
                return
            if self._state is not DeadlineState.ARMED:
                raise RuntimeError(f"Deadline already {self._state.value}")
            self._on_timeout = on_timeout
            self._timer = threading.Timer(self.timeout_seconds, self._fire)
            self._timer.name = "workflow-deadline"
            self._timer.daemon = True
            self._state = DeadlineState.RUNNING
            self._timer.start()
        logger.debug("Deadline armed", extra={"timeout_seconds": self.timeout_seconds})

    def _fire(self) -> None:
        with self._lock:
            if self._state is not DeadlineState.RUNNING:
                return
            self._state = DeadlineState.FIRING

        logger.warning("Workflow deadline reached", extra={"timeout_seconds": self.timeout_seconds})
        if self._on_timeout is not None:
            try:
                self._on_timeout()
            except Exception:
                logger.exception("Deadline callback failed")

        with self._lock:
            self._state = DeadlineState.TIMED_OUT
        self._signal.cancel(f"Workflow timed out after {self.timeout_seconds:g} seconds")

    def cancel(self) -> None:
        """Disarm the timer after a normal finish. No effect once it fired."""

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            if self._state in (DeadlineState.ARMED, DeadlineState.RUNNING):
                self._state = DeadlineState.COMPLETED

    def abort(self, reason: str) -> None:
        """Cancel the run from outside (e.g. on SIGINT)."""

        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            if self._state in (DeadlineState.ARMED, DeadlineState.RUNNING):
                self._state = DeadlineState.ABORTED
        self._signal.cancel(reason)


def call_with_signal(
    fn: Callable[..., T],
    *args: Any,
    signal: CancellationSignal | None = None,
    poll_seconds: float = 0.1,
    **kwargs: Any,
) -> T:
    """Run a blocking call so that it can be abandoned when ``signal`` fires.

    Without a signal the call runs inline. With one, it runs on a daemon worker
    thread and ``WorkflowCancelled`` is raised as soon as the signal is set; the
    abandoned call's result is discarded.
    """
    if signal is None:
        return fn(*args, **kwargs)
    signal.raise_if_cancelled()

    results: queue.Queue[tuple[bool, Any]] = queue.Queue(maxsize=1)

    def _worker() -> None:
        try:
            results.put((True, fn(*args, **kwargs)))
        except BaseException as exc:  # noqa: BLE001 (handed back to the caller)
            results.put((False, exc))

    threading.Thread(target=_worker, name="provider-call", daemon=True).start()

    while True:
        try:
            ok, value = results.get(timeout=poll_seconds)
        except queue.Empty:
            signal.raise_if_cancelled()
            continue
        if ok:
            return value
        raise value
