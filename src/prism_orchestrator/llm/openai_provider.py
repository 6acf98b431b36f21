"""OpenAI LLM provider implementation."""

from __future__ import annotations

import logging
from typing import Any

from openai import OpenAI

from prism_orchestrator.core.config import EngineSettings
from prism_orchestrator.core.errors import ConfigurationError
from prism_orchestrator.llm.provider import LLMProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider implementation."""

    input_cost_per_mtok = 2.5
    output_cost_per_mtok = 10.0

    def __init__(self, settings: EngineSettings, client: Any | None = None) -> None:
        """Initialize the OpenAI provider.

        Args:
            settings: Engine settings.
            client: Pre-built client (tests inject a fake).

        Raises:
            ConfigurationError: If the API key is not provided.
        """
        if client is None and not settings.openai_api_key:
            raise ConfigurationError("OpenAI API key is required", "OPENAI_API_KEY")

        self.client = client or OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.request_timeout_seconds,
            max_retries=0,
        )
        self.model = settings.openai_model
        self.temperature = settings.temperature
        self.max_output_tokens = settings.max_output_tokens

        logger.info(f"OpenAI provider initialized with model: {self.model}")

    @property
    def name(self) -> str:
        return "openai"

    def generate(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> str:
        temp = temperature if temperature is not None else self.temperature

        logger.debug(f"Generating completion for prompt: {prompt[:100]}...")

        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            max_tokens=max_tokens or self.max_output_tokens,
            temperature=temp,
            **kwargs,
        )

        content = response.choices[0].message.content or ""
        logger.debug(f"Generated {len(content)} characters")

        return content
