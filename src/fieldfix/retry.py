# retry.py
# Error classification and bounded retry for generator calls.
#
# Every failure coming out of the model service is reduced to one ErrorKind
# by classify_error(). Retry and fallback decisions switch on that enum and
# never inspect raw exception shapes anywhere else.

import asyncio
import enum
import random
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from fieldfix.log import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
BASE_DELAY_S = 0.4
MAX_JITTER_S = 0.25

_QUOTA_PATTERN = re.compile(r"\bquota(_exceeded)?\b|resource.?exhausted", re.IGNORECASE)
_RATE_PATTERN = re.compile(r"\b429\b|rate.?limit", re.IGNORECASE)
_OVERLOAD_PATTERN = re.compile(r"\b503\b|overload(ed)?|unavailable", re.IGNORECASE)


class ErrorKind(str, enum.Enum):
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"


class GeneratorError(Exception):
    """A classified failure from the generative model service."""

    def __init__(self, kind: ErrorKind, message: str, status: int | None = None, model: str | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.model = model


def status_of(error: BaseException) -> int | None:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None) or getattr(response, "status", None)
    return value if isinstance(value, int) else None


def classify_error(error: BaseException) -> ErrorKind:
    """Reduce any exception to an ErrorKind. Already-classified errors pass through."""
    if isinstance(error, GeneratorError):
        return error.kind

    status = status_of(error)
    message = str(error) or ""

    if status == 429:
        return ErrorKind.QUOTA_EXCEEDED if _QUOTA_PATTERN.search(message) else ErrorKind.RATE_LIMITED
    if status == 503:
        return ErrorKind.SERVICE_UNAVAILABLE

    if _QUOTA_PATTERN.search(message):
        return ErrorKind.QUOTA_EXCEEDED
    if _RATE_PATTERN.search(message):
        return ErrorKind.RATE_LIMITED
    if _OVERLOAD_PATTERN.search(message):
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.UNKNOWN


def is_retryable(error: BaseException) -> bool:
    return classify_error(error) is not ErrorKind.UNKNOWN


def is_quota_error(error: BaseException) -> bool:
    """429-only view used by the plan stage's static fallback. 503 never counts."""
    return classify_error(error) in (ErrorKind.RATE_LIMITED, ErrorKind.QUOTA_EXCEEDED)


def backoff_delay(attempt: int, rng: Callable[[], float] = random.random) -> float:
    """Seconds to wait after failed attempt `attempt` (1-based)."""
    return BASE_DELAY_S * (2 ** (attempt - 1)) + rng() * MAX_JITTER_S


@dataclass
class RetryStats:
    """Call accounting shared across retries (and model fallback) of one request."""

    attempts: int = 0
    retries: int = 0


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = DEFAULT_ATTEMPTS,
    *,
    stats: RetryStats | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """
    Await `fn()` up to `attempts` times.

    Only retryable errors are retried. Fatal errors propagate on first
    occurrence; after the final attempt the last error is re-raised as-is.
    """
    stats = stats if stats is not None else RetryStats()

    for attempt in range(1, attempts + 1):
        stats.attempts += 1
        try:
            return await fn()
        except Exception as exc:
            kind = classify_error(exc)
            if kind is ErrorKind.UNKNOWN or attempt == attempts:
                raise

            delay = backoff_delay(attempt, rng)
            logger.info("attempt %d/%d failed (%s), retrying in %.2fs", attempt, attempts, kind.value, delay)
            stats.retries += 1
            await sleep(delay)

    raise RuntimeError("with_retry called with attempts < 1")
