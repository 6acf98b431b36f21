"""Local LLaMA provider implementation."""

from __future__ import annotations

import logging
from typing import Any

from prism_orchestrator.core.config import EngineSettings
from prism_orchestrator.core.errors import ConfigurationError
from prism_orchestrator.llm.provider import LLMProvider

logger = logging.getLogger(__name__)


class LLaMAProvider(LLMProvider):
    """Local LLaMA model provider implementation.

    Requires the ``llama`` extra:
        pip install prism-orchestrator[llama]
    """

    def __init__(self, settings: EngineSettings, llm: Any | None = None) -> None:
        """Initialize the LLaMA provider.

        Args:
            settings: Engine settings.
            llm: Pre-loaded model (tests inject a fake).

        Raises:
            ConfigurationError: If the model path is not provided or
                llama-cpp-python is not installed.
        """
        self.temperature = settings.temperature
        self.max_output_tokens = settings.max_output_tokens

        if llm is not None:
            self.llm = llm
            return

        if not settings.llama_model_path:
            raise ConfigurationError("LLaMA model path is required", "LLAMA_MODEL_PATH")

        try:
            from llama_cpp import Llama
        except ImportError as e:
            raise ConfigurationError(
                "llama-cpp-python is required for the LLaMA provider. "
                "Install it with: pip install prism-orchestrator[llama]",
                "LLAMA_MODEL_PATH",
            ) from e

        logger.info(f"Loading LLaMA model from: {settings.llama_model_path}")

        self.llm = Llama(
            model_path=str(settings.llama_model_path),
            n_ctx=settings.llama_n_ctx,
            verbose=False,
        )

        logger.info("LLaMA model loaded successfully")

    @property
    def name(self) -> str:
        return "llama"

    def generate(
        self,
        prompt: str,
        max_tokens: int | None = None,
        temperature: float | None = None,
        **kwargs: Any,
    ) -> str:
        logger.debug(f"Generating completion for prompt: {prompt[:100]}...")

        result = self.llm(
            prompt,
            max_tokens=max_tokens or self.max_output_tokens,
            temperature=temperature if temperature is not None else self.temperature,
            **kwargs,
        )

        content = result["choices"][0]["text"]
        logger.debug(f"Generated {len(content)} characters")

        return content

    def count_tokens(self, text: str) -> int:
        """Count tokens using the model's tokenizer."""

        return len(self.llm.tokenize(text.encode("utf-8")))
