"""Retry policy for collaborator calls.

Every network call in the pipeline runs under a per-attempt timeout and a
tenacity retry loop. Only errors flagged transient (and timeouts) are
retried; the final exception is re-raised unchanged after exhaustion.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import tenacity

from code_search.errors import is_transient
from code_search.schemas.config import RetryConfig

__all__ = [
    'build_retrying',
    'call_with_retry',
]

logger = logging.getLogger(__name__)


def build_retrying(config: RetryConfig, *, label: str) -> tenacity.AsyncRetrying:
    """Exponential backoff capped at max_backoff_seconds, plus uniform jitter."""
    return tenacity.AsyncRetrying(
        retry=tenacity.retry_if_exception(is_transient),
        stop=tenacity.stop_after_attempt(config.max_attempts),
        wait=tenacity.wait_exponential(multiplier=config.initial_backoff_seconds, max=config.max_backoff_seconds)
        + tenacity.wait_random(0, config.jitter_seconds),
        before_sleep=_log_retry(label),
        reraise=True,
    )


async def call_with_retry[T](
    operation: Callable[[], Awaitable[T]],
    *,
    config: RetryConfig,
    timeout_seconds: float,
    label: str,
) -> T:
    """Run ``operation`` with a per-attempt timeout under the retry policy.

    Raises:
        The last exception once attempts are exhausted or the error is permanent.
    """
    async for attempt in build_retrying(config, label=label):
        with attempt:
            async with asyncio.timeout(timeout_seconds):
                return await operation()
    raise AssertionError('unreachable: tenacity reraises on exhaustion')


def _log_retry(label: str) -> Callable[[tenacity.RetryCallState], None]:
    def log(retry_state: tenacity.RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if exc is None:
            return
        logger.warning(f'[RETRY] {label} attempt {retry_state.attempt_number} failed: {type(exc).__name__}: {exc}')

    return log
