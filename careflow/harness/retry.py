"""
Retry with backoff for inference calls.

Only the inference boundary retries. Tool failures are never retried here;
the reasoning loop hands them back to the model, which may choose to re-issue
the call on a later iteration.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import anthropic
import structlog

logger = structlog.get_logger(__name__)

_RETRYABLE_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504, 529})


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter_range: float = 0.25

    @classmethod
    def from_inference_config(cls, config) -> "RetryConfig":
        return cls(
            max_retries=config.retry_max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            exponential_base=config.retry_exponential_base,
            jitter_range=config.retry_jitter_range,
        )


def is_retryable_error(error: BaseException) -> bool:
    """
    Return True for transient failures: rate limits, 5xx, dropped or
    timed-out connections. Client errors (400/401/403/404) are final.
    """
    if isinstance(error, (anthropic.APIConnectionError, anthropic.APITimeoutError)):
        return True
    if isinstance(error, (anthropic.RateLimitError, anthropic.InternalServerError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in _RETRYABLE_STATUS
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    return False


def _retry_after_seconds(error: BaseException) -> Optional[float]:
    response = getattr(error, "response", None)
    if response is None:
        return None
    try:
        value = response.headers.get("retry-after")
    except AttributeError:
        return None
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Exponential backoff with symmetric jitter, capped at ``max_delay``.

    A server-provided Retry-After wins, but is still capped so a misbehaving
    header cannot stall a turn past its deadline.
    """
    if retry_after is not None and retry_after > 0:
        return min(config.max_delay, retry_after)

    delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)
    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.05, delay + jitter)


async def with_retries(
    func: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> Any:
    """
    Await ``func()`` and retry transient failures.

    Non-retryable errors and the last error after the final attempt are
    re-raised unchanged; callers translate them into their own taxonomy.
    Cancellation is never swallowed.
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.warning(
                    "retry.non_retryable_error",
                    error_type=type(e).__name__,
                    attempt=attempt,
                )
                raise
            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, _retry_after_seconds(e))
            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )
            if on_retry:
                on_retry(attempt + 1, e, delay)
            await asyncio.sleep(delay)

    raise RuntimeError("with_retries: unreachable")
