"""
Bounded exponential-backoff retry for network, vector store and LLM calls.

Transient failures (timeouts, rate limits, 5xx) are retried; auth, config and
schema failures propagate on first occurrence. When attempts run out the last
error is re-raised unchanged.
"""

import asyncio
import inspect
import logging
import random
from typing import Any, Awaitable, Callable, Optional, Union

from utils.exceptions import FlashcardError, NetworkError
from utils.metrics import RETRIES

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_MULTIPLIER = 2.0
DEFAULT_MAX_DELAY_MS = 60000
DEFAULT_JITTER = 0.25

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
NON_RETRYABLE_STATUS_CODES = {400, 401, 403, 404, 422}

RETRYABLE_MESSAGE_PATTERNS = (
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "rate limit",
    "rate_limit",
    "quota",
    "overloaded",
    "temporarily unavailable",
    "service unavailable",
    "too many requests",
)


def _status_of(exc: Exception) -> Optional[int]:
    """Pull an HTTP status out of the SDK/requests exception shapes we see."""
    for attr in ("http_status", "status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(exc: Exception) -> bool:
    """Classify an exception as transient (retry) or permanent (propagate)."""
    if isinstance(exc, NetworkError):
        return exc.http_status not in NON_RETRYABLE_STATUS_CODES
    if isinstance(exc, FlashcardError):
        # Config, parse, validation, not-found, storage and cancellation are final
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    status = _status_of(exc)
    if status in RETRYABLE_STATUS_CODES:
        return True
    if status in NON_RETRYABLE_STATUS_CODES:
        return False

    message = str(exc).lower()
    return any(pattern in message for pattern in RETRYABLE_MESSAGE_PATTERNS)


def get_retry_after_ms(exc: Exception) -> Optional[int]:
    """Read a Retry-After hint (seconds) from the error, if the server sent one."""
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is None:
        headers = getattr(getattr(exc, "response", None), "headers", None) or {}
        try:
            retry_after = headers.get("retry-after") or headers.get("Retry-After")
        except AttributeError:
            retry_after = None
    if retry_after is None:
        return None
    try:
        return int(float(retry_after) * 1000)
    except (TypeError, ValueError):
        return None


def compute_delay_ms(
    attempt: int,
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
    multiplier: float = DEFAULT_MULTIPLIER,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
    jitter: float = DEFAULT_JITTER,
) -> int:
    """Backoff delay before retry number `attempt` (1-based)."""
    delay = initial_delay_ms * (multiplier ** (attempt - 1))
    delay = min(delay, max_delay_ms)
    if jitter:
        delay *= 1 + random.uniform(-jitter, jitter)
    return int(max(0, min(delay, max_delay_ms)))


async def with_retry(
    fn: Callable[[], Union[Awaitable[Any], Any]],
    operation: str = "operation",
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
    multiplier: float = DEFAULT_MULTIPLIER,
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS,
    jitter: float = DEFAULT_JITTER,
    is_retryable: Callable[[Exception], bool] = is_retryable_error,
    on_retry: Optional[Callable[[int, Exception, int], None]] = None,
    checkpoint: Optional[Callable[[str], None]] = None,
) -> Any:
    """
    Call `fn` until it succeeds, a non-retryable error occurs, or attempts run out.

    Args:
        fn: Zero-argument callable; may return a value or an awaitable.
        operation: Label for logs and the retry counter.
        max_attempts: Total attempts including the first one.
        is_retryable: Classifier for transient errors.
        on_retry: Optional hook called with (attempt, error, delay_ms).
        checkpoint: Optional cancellation check called before every attempt.

    Returns:
        Whatever `fn` returns on its first successful attempt.
    """
    max_attempts = max(1, max_attempts)
    last_error: Optional[Exception] = None

    for attempt in range(1, max_attempts + 1):
        if checkpoint:
            checkpoint(operation)
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result
        except Exception as e:
            last_error = e
            if not is_retryable(e):
                logger.error(f"[{operation}] Non-retryable error on attempt {attempt}: {str(e)[:200]}")
                raise
            if attempt >= max_attempts:
                logger.error(f"[{operation}] Giving up after {attempt} attempts: {str(e)[:200]}")
                raise

            delay_ms = compute_delay_ms(attempt, initial_delay_ms, multiplier, max_delay_ms, jitter)
            retry_after_ms = get_retry_after_ms(e)
            if retry_after_ms is not None:
                delay_ms = min(retry_after_ms, max_delay_ms)

            logger.warning(
                f"[{operation}] Retry attempt {attempt}/{max_attempts - 1} in {delay_ms}ms - {str(e)[:80]}"
            )
            RETRIES.labels(operation=operation).inc()
            if on_retry:
                on_retry(attempt, e, delay_ms)
            await asyncio.sleep(delay_ms / 1000)

    # Unreachable: the loop either returns or raises
    raise last_error  # pragma: no cover
