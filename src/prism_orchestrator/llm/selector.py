"""Provider selection with retry, backoff and fallback.

For every call the active provider is tried first. Transient failures are
retried on the same provider with exponential backoff (or the provider's
``retry-after`` hint). Once its retries are exhausted the active pointer moves
to the next provider in the chain and a ``FallbackEvent`` is emitted. Permanent
failures propagate immediately.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from prism_orchestrator.core.config import EngineSettings
from prism_orchestrator.core.errors import ConfigurationError, EngineError, ProviderError, WorkflowCancelled
from prism_orchestrator.llm.errors import classify_error
from prism_orchestrator.llm.factory import LLMFactory
from prism_orchestrator.llm.provider import LLMProvider
from prism_orchestrator.orchestrator.workflow.deadline import CancellationSignal, call_with_signal
from prism_orchestrator.state.models import SessionConfig, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class FallbackEvent:
    failed_provider: str
    active_provider: str
    reason: str
    timestamp: datetime


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for retrying one provider."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def compute_delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay before retry number ``attempt`` (zero-based)."""

        delay = min(self.max_delay, self.base_delay * self.multiplier**attempt)
        if self.jitter:
            delay *= 1 + (rng or random).uniform(-self.jitter, self.jitter)
        return max(0.0, delay)


class _wait_backoff_or_hint(wait_base):
    """Wait the provider's retry-after hint when given, else the policy backoff."""

    def __init__(self, policy: RetryPolicy, rng: random.Random | None) -> None:
        self.policy = policy
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, ProviderError) and exc.retry_after is not None:
            return exc.retry_after
        return self.policy.compute_delay(retry_state.attempt_number - 1, self.rng)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.is_transient


def _generate(provider: LLMProvider, prompt: str, **kwargs: Any) -> str:
    return provider.generate(prompt, **kwargs)


class ProviderSelector:
    """Chooses, retries and substitutes generation providers."""

    def __init__(
        self,
        order: Sequence[str],
        loader: Callable[[str], LLMProvider],
        *,
        policy: RetryPolicy | None = None,
        max_fallbacks: int = 2,
        on_fallback: Callable[[FallbackEvent], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        """Initialize the selector.

        Args:
            order: Provider names, most preferred first.
            loader: Returns the provider instance for a name.
            policy: Retry/backoff parameters per provider.
            max_fallbacks: Maximum provider substitutions per call.
            on_fallback: Called with every ``FallbackEvent``.
            sleep: Sleep function used when no cancellation signal is given.
            rng: Source of jitter.
        """
        if not order:
            raise ConfigurationError("no generation provider is configured", "AI_PROVIDER")
        self.order = list(order)
        self.loader = loader
        self.policy = policy or RetryPolicy()
        self.max_fallbacks = max_fallbacks
        self.on_fallback = on_fallback
        self._sleep = sleep
        self._rng = rng
        self._active = 0

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        session_config: SessionConfig | None = None,
        *,
        loader: Callable[[str], LLMProvider] | None = None,
        on_fallback: Callable[[FallbackEvent], None] | None = None,
    ) -> ProviderSelector:
        """Build a selector from settings, using a session's snapshot when resuming.

        Providers without credentials are left out of the chain.
        """
        chain = list(session_config.provider_order) if session_config else settings.effective_provider_order()
        configured = settings.configured_providers()
        order = [name for name in chain if configured.get(name)]
        if not order:
            raise ConfigurationError(
                "no provider in the chain has credentials "
                f"(chain: {', '.join(chain)}); set ANTHROPIC_API_KEY, OPENAI_API_KEY or LLAMA_MODEL_PATH",
                "AI_PROVIDER",
            )
        policy = RetryPolicy(
            max_retries=session_config.max_retries if session_config else settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_multiplier,
            jitter=settings.retry_jitter,
        )
        return cls(
            order,
            loader or LLMFactory.loader(settings),
            policy=policy,
            max_fallbacks=session_config.max_fallbacks if session_config else settings.max_fallbacks,
            on_fallback=on_fallback,
        )

    @property
    def active_provider(self) -> str:
        return self.order[self._active]

    def get_provider(self, name: str | None = None) -> LLMProvider:
        return self.loader(name or self.active_provider)

    def _sleeper(self, signal: CancellationSignal | None) -> Callable[[float], None]:
        def _sleep(seconds: float) -> None:
            if signal is None:
                self._sleep(seconds)
            elif signal.wait(seconds):
                raise WorkflowCancelled(signal.reason or "Workflow cancelled")

        return _sleep

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"Transient provider error, retrying in {delay:.2f}s",
            extra={
                "provider": self.active_provider,
                "attempt": retry_state.attempt_number,
                "max_retries": self.policy.max_retries,
                "error": str(exc),
            },
        )

    def _call_with_retries(
        self,
        name: str,
        operation: Callable[..., T],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        signal: CancellationSignal | None,
    ) -> T:
        provider = self.loader(name)

        def _attempt() -> T:
            try:
                return call_with_signal(operation, provider, *args, signal=signal, **kwargs)
            except EngineError:
                raise
            except Exception as exc:
                raise classify_error(exc, name) from exc

        retrying = Retrying(
            stop=stop_after_attempt(self.policy.max_retries + 1),
            wait=_wait_backoff_or_hint(self.policy, self._rng),
            retry=retry_if_exception(_is_transient),
            sleep=self._sleeper(signal),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return retrying(_attempt)

    def invoke(
        self,
        operation: Callable[..., T],
        *args: Any,
        signal: CancellationSignal | None = None,
        **kwargs: Any,
    ) -> T:
        """Call ``operation(provider, *args, **kwargs)`` with retry and fallback.

        Raises:
            ProviderError: On a permanent error, or when every allowed provider
                exhausted its retries (names the last provider tried).
            WorkflowCancelled: If ``signal`` fires during a call or a backoff.
        """
        substitutions = 0
        while True:
            name = self.active_provider
            try:
                return self._call_with_retries(name, operation, args, kwargs, signal)
            except ProviderError as exc:
                if not exc.is_transient:
                    logger.error(
                        "Permanent provider error",
                        extra={"provider": name, "error": exc.message},
                    )
                    raise
                last_error = exc

            if substitutions >= self.max_fallbacks or self._active + 1 >= len(self.order):
                raise ProviderError(
                    f"retries and fallbacks exhausted ({last_error.message})",
                    name,
                    is_transient=True,
                ) from last_error

            self._active += 1
            substitutions += 1
            event = FallbackEvent(
                failed_provider=name,
                active_provider=self.active_provider,
                reason=last_error.message,
                timestamp=utc_now(),
            )
            logger.warning(
                f"Falling back from {event.failed_provider} to {event.active_provider}",
                extra={"reason": event.reason},
            )
            if self.on_fallback is not None:
                self.on_fallback(event)

    def generate(self, prompt: str, *, signal: CancellationSignal | None = None, **kwargs: Any) -> str:
        """Generate text with the active provider."""

        return self.invoke(_generate, prompt, signal=signal, **kwargs)
