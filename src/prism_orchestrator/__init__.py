"""PRISM workflow engine.

A local, single-user engine that runs a resumable five-step PRD-to-TDD
pipeline:
- crash-safe session state with per-step checkpoints
- a workspace lock so only one run touches a workspace at a time
- a workflow deadline that pauses instead of losing work
- provider retry and fallback across Anthropic, OpenAI and local LLaMA
"""

__version__ = "0.1.0"

from prism_orchestrator.core.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
