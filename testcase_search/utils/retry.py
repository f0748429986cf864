"""
Retry policies for upstream calls.

Retrievers, the embedding job runner and the relevance service all talk to
rate-limited managed services. They share one policy built on tenacity:

- Only retryable UpstreamError instances are retried (timeouts, outages,
  throttling). ValidationError and non-retryable upstream errors surface
  immediately.
- Waits grow exponentially, except after RateLimited carrying a
  provider-specified retry_after, which is honored.
- Each attempt can be bounded by a deadline; exceeding it raises
  UpstreamTimeout so callers can tell "could not ask" from "found nothing".

Usage:
    from testcase_search.utils.retry import call_with_retry

    matches = await call_with_retry(
        lambda: client.search(index, clause, None, 10),
        operation="keyword_search",
        max_attempts=3,
        timeout=10.0,
    )
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from testcase_search.errors import RateLimited, UpstreamError, UpstreamTimeout

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# =============================================================================
# Constants
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_MIN_WAIT = 0.5  # seconds
DEFAULT_MAX_WAIT = 8.0  # seconds

# Provider retry-after hints above this are clamped
RETRY_AFTER_CEILING = 60.0  # seconds


# =============================================================================
# Retry Predicates and Waits
# =============================================================================


def is_retryable(exc: BaseException) -> bool:
    """True for upstream failures a retry may fix."""
    return isinstance(exc, UpstreamError) and exc.retryable


class wait_retry_after(wait_base):
    """
    Wait strategy honoring RateLimited.retry_after.

    Falls back to the wrapped strategy for every other failure and for
    rate limits without a provider hint.
    """

    def __init__(self, fallback: wait_base, ceiling: float = RETRY_AFTER_CEILING):
        self.fallback = fallback
        self.ceiling = ceiling

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, RateLimited) and exc.retry_after is not None:
            return min(max(exc.retry_after, 0.0), self.ceiling)
        return self.fallback(retry_state)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    outcome = retry_state.outcome
    exc = outcome.exception() if outcome is not None else None
    logger.warning(
        "upstream_retry_scheduled",
        attempt=retry_state.attempt_number,
        wait_seconds=(
            round(retry_state.next_action.sleep, 3)
            if retry_state.next_action is not None
            else None
        ),
        error=str(exc),
        error_type=type(exc).__name__ if exc else None,
    )


def upstream_retrying(
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    min_wait: float = DEFAULT_MIN_WAIT,
    max_wait: float = DEFAULT_MAX_WAIT,
) -> AsyncRetrying:
    """
    Build the AsyncRetrying controller shared by upstream callers.

    Example:
        async for attempt in upstream_retrying(max_attempts=3):
            with attempt:
                return await client.search(...)
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_retry_after(
            wait_exponential(multiplier=max(min_wait, 0.0), min=min_wait, max=max_wait)
        ),
        retry=retry_if_exception(is_retryable),
        before_sleep=_log_before_sleep,
        reraise=True,
    )


# =============================================================================
# Call Helper
# =============================================================================


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    *,
    operation: str,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    min_wait: float = DEFAULT_MIN_WAIT,
    max_wait: float = DEFAULT_MAX_WAIT,
    timeout: float | None = None,
) -> T:
    """
    Await func() with a per-attempt deadline and the shared retry policy.

    Args:
        func: Zero-argument coroutine factory; called once per attempt.
        operation: Name used in logs and timeout messages.
        max_attempts: Total attempts including the first.
        min_wait: Minimum backoff wait (seconds).
        max_wait: Maximum backoff wait (seconds).
        timeout: Per-attempt deadline in seconds, or None for no deadline.

    Returns:
        The first successful result.

    Raises:
        UpstreamTimeout: If the last attempt exceeded its deadline.
        UpstreamError: If the last attempt failed upstream.
        Exception: Non-retryable errors propagate from the first attempt.
    """
    async for attempt in upstream_retrying(max_attempts, min_wait, max_wait):
        with attempt:
            if timeout is None:
                return await func()
            try:
                return await asyncio.wait_for(func(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise UpstreamTimeout(
                    f"{operation} exceeded {timeout}s deadline"
                ) from e
    raise AssertionError("unreachable: tenacity reraises the last failure")


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "is_retryable",
    "wait_retry_after",
    "upstream_retrying",
    "call_with_retry",
    "DEFAULT_MAX_ATTEMPTS",
    "DEFAULT_MIN_WAIT",
    "DEFAULT_MAX_WAIT",
]
