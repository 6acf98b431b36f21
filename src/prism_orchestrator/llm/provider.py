"""Abstract base class for generation providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class LLMProvider(ABC):
    """Abstract base class for generation providers.

    This interface allows pluggable LLM backends (Anthropic, OpenAI, LLaMA).
    Adapters do not retry; retry, backoff and fallback belong to the
    ``ProviderSelector``.
    """

    #: USD per million input/output tokens; zero for local models.
    input_cost_per_mtok: float = 0.0
    output_cost_per_mtok: float = 0.0

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name as used in the fallback chain."""

    @abstractmethod
    def generate(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> str:
        """Generate text completion from a prompt.

        Args:
            prompt: The input prompt.
            max_tokens: Maximum tokens to generate.
            temperature: Sampling temperature.
            **kwargs: Additional provider-specific parameters.

        Returns:
            Generated text completion.
        """

    def count_tokens(self, text: str) -> int:
        """Count tokens using a simple approximation (1 token ~ 4 characters)."""

        return len(text) // 4

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """Estimated USD cost of one call."""

        return (
            input_tokens * self.input_cost_per_mtok + output_tokens * self.output_cost_per_mtok
        ) / 1_000_000
