"""Classification of provider failures into transient and permanent errors."""

from __future__ import annotations

import logging
from datetime import UTC
from email.utils import parsedate_to_datetime
from typing import Any

from prism_orchestrator.core.errors import ProviderError
from prism_orchestrator.state.models import utc_now

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429})
PERMANENT_STATUS_CODES = frozenset({400, 401, 403, 404, 422})

PERMANENT_MARKERS = (
    "authentication",
    "unauthorized",
    "invalid api key",
    "invalid x-api-key",
    "permission denied",
)
TRANSIENT_MARKERS = (
    "rate limit",
    "rate_limit",
    "quota",
    "timeout",
    "timed out",
    "temporarily unavailable",
    "overloaded",
    "connection",
    "503",
    "429",
)


def _status_code(exc: BaseException) -> int | None:
    for candidate in (exc, getattr(exc, "response", None)):
        code = getattr(candidate, "status_code", None)
        if isinstance(code, int):
            return code
    return None


def _headers(exc: BaseException) -> Any:
    response = getattr(exc, "response", None)
    return getattr(response, "headers", None) or {}


def parse_retry_after(exc: BaseException) -> float | None:
    """Seconds to wait according to the provider's ``retry-after`` header, if any."""

    headers = _headers(exc)
    try:
        raw = headers.get("retry-after")
    except AttributeError:
        return None
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        pass
    try:
        when = parsedate_to_datetime(str(raw))
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - utc_now()).total_seconds())


def is_transient(exc: BaseException) -> bool:
    """Decide whether retrying the same call could succeed."""

    if isinstance(exc, ProviderError):
        return exc.is_transient

    status = _status_code(exc)
    if status is not None:
        if status in TRANSIENT_STATUS_CODES or status >= 500:
            return True
        if status in PERMANENT_STATUS_CODES:
            return False

    type_name = type(exc).__name__.lower()
    if "timeout" in type_name or "connection" in type_name:
        return True
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True

    message = str(exc).lower()
    if any(marker in message for marker in PERMANENT_MARKERS):
        return False
    return any(marker in message for marker in TRANSIENT_MARKERS)


def classify_error(exc: BaseException, provider: str) -> ProviderError:
    """Wrap any provider failure as a ``ProviderError`` with its classification."""

    if isinstance(exc, ProviderError):
        return exc
    transient = is_transient(exc)
    retry_after = parse_retry_after(exc) if transient else None
    error = ProviderError(
        f"{type(exc).__name__}: {exc}",
        provider,
        is_transient=transient,
        retry_after=retry_after,
    )
    logger.debug(
        "Classified provider error",
        extra={"provider": provider, "transient": transient, "retry_after": retry_after},
    )
    return error
