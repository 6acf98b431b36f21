"""Core package initialization."""

from prism_orchestrator.core.config import EngineSettings
from prism_orchestrator.core.errors import EngineError, format_error

__all__ = [
    "EngineError",
    "EngineSettings",
    "format_error",
]
