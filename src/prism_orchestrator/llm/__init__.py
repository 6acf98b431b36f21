"""LLM package initialization."""

from prism_orchestrator.llm.factory import LLMFactory
from prism_orchestrator.llm.provider import LLMProvider
from prism_orchestrator.llm.selector import FallbackEvent, ProviderSelector, RetryPolicy

__all__ = [
    "FallbackEvent",
    "LLMFactory",
    "LLMProvider",
    "ProviderSelector",
    "RetryPolicy",
]
