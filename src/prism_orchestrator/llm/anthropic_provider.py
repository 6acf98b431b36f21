"""Anthropic Claude provider implementation."""

from __future__ import annotations

import logging
from typing import Any

from prism_orchestrator.core.config import EngineSettings
from prism_orchestrator.core.errors import ConfigurationError
from prism_orchestrator.llm.provider import LLMProvider

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API provider.

    The SDK client is created on first use so that building a fallback chain
    does not open connections for providers that are never reached.
    """

    input_cost_per_mtok = 3.0
    output_cost_per_mtok = 15.0

    def __init__(self, settings: EngineSettings, client: Any | None = None) -> None:
        if client is None and not settings.anthropic_api_key:
            raise ConfigurationError("Anthropic API key is required", "ANTHROPIC_API_KEY")

        self._api_key = settings.anthropic_api_key
        self._timeout = settings.request_timeout_seconds
        self._client = client
        self.model = settings.anthropic_model
        self.temperature = settings.temperature
        self.max_output_tokens = settings.max_output_tokens

        logger.info(f"Anthropic provider initialized with model: {self.model}")

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def client(self) -> Any:
        if self._client is None:
            import anthropic

            self._client = anthropic.Anthropic(
                api_key=self._api_key,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._client

    def generate(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> str:
        temp = temperature if temperature is not None else self.temperature

        logger.debug(f"Generating completion for prompt: {prompt[:100]}...")

        response = self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens or self.max_output_tokens,
            temperature=temp,
            messages=[{"role": "user", "content": prompt}],
            **kwargs,
        )

        content = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        logger.debug(f"Generated {len(content)} characters")

        return content
