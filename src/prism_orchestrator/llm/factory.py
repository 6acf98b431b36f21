"""Factory for creating LLM providers."""

from __future__ import annotations

import logging
from collections.abc import Callable

from prism_orchestrator.core.config import KNOWN_PROVIDERS, EngineSettings
from prism_orchestrator.core.errors import ConfigurationError
from prism_orchestrator.llm.anthropic_provider import AnthropicProvider
from prism_orchestrator.llm.llama_provider import LLaMAProvider
from prism_orchestrator.llm.openai_provider import OpenAIProvider
from prism_orchestrator.llm.provider import LLMProvider

logger = logging.getLogger(__name__)


class LLMFactory:
    """Factory for creating LLM provider instances."""

    @staticmethod
    def create(name: str, settings: EngineSettings) -> LLMProvider:
        """Create an LLM provider by name.

        Args:
            name: Provider name (``anthropic``, ``openai`` or ``llama``).
            settings: Engine settings carrying credentials and model names.

        Returns:
            Configured LLM provider instance.

        Raises:
            ConfigurationError: If the provider is unknown or lacks credentials.
        """
        logger.info(f"Creating LLM provider: {name}")

        if name == "anthropic":
            return AnthropicProvider(settings)
        elif name == "openai":
            return OpenAIProvider(settings)
        elif name == "llama":
            return LLaMAProvider(settings)
        else:
            raise ConfigurationError(
                f"Unsupported LLM provider {name!r}; expected one of: {', '.join(KNOWN_PROVIDERS)}",
                "AI_PROVIDER",
            )

    @staticmethod
    def loader(settings: EngineSettings) -> Callable[[str], LLMProvider]:
        """A memoizing ``name -> provider`` loader for the selector."""

        cache: dict[str, LLMProvider] = {}

        def _load(name: str) -> LLMProvider:
            if name not in cache:
                cache[name] = LLMFactory.create(name, settings)
            return cache[name]

        return _load
