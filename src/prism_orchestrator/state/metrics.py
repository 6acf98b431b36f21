"""Append-only metrics log (one JSON object per line)."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from prism_orchestrator.core.errors import StorageError
from prism_orchestrator.state.models import utc_now

logger = logging.getLogger(__name__)


class MetricsLog:
    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def record(self, event: str, **fields: Any) -> None:
        entry = {"timestamp": utc_now().isoformat(), "event": event, **fields}
        line = json.dumps(entry, ensure_ascii=False, default=str)
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                raise StorageError(f"Cannot append metrics ({exc.strerror})", self.path) from exc
        logger.debug("Metric recorded", extra={"event": event})

    def read(self) -> list[dict[str, Any]]:
        """All recorded events, skipping lines that do not parse."""

        if not self.path.exists():
            return []
        events = []
        for line in self.path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping malformed metrics line", extra={"path": str(self.path)})
        return events
