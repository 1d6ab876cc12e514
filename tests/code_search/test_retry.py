"""Tests for the collaborator retry policy."""

from __future__ import annotations

import asyncio

import pytest

from code_search.errors import ProviderError, StoreError
from code_search.schemas.config import RetryConfig
from code_search.services.retry import call_with_retry

RETRY = RetryConfig(max_attempts=3, initial_backoff_seconds=0, max_backoff_seconds=0.001, jitter_seconds=0)


class _Flaky:
    def __init__(self, failures: list[BaseException]) -> None:
        self.failures = failures
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return 'ok'


class TestCallWithRetry:
    async def test_transient_errors_are_retried(self) -> None:
        operation = _Flaky([ProviderError('503', transient=True), StoreError('reset', transient=True)])

        assert await call_with_retry(operation, config=RETRY, timeout_seconds=1, label='op') == 'ok'
        assert operation.calls == 3

    async def test_permanent_error_is_not_retried(self) -> None:
        operation = _Flaky([ProviderError('400', transient=False)])

        with pytest.raises(ProviderError):
            await call_with_retry(operation, config=RETRY, timeout_seconds=1, label='op')
        assert operation.calls == 1

    async def test_exhaustion_reraises_last_error(self) -> None:
        operation = _Flaky([StoreError(f'attempt {i}', transient=True) for i in range(5)])

        with pytest.raises(StoreError, match='attempt 2'):
            await call_with_retry(operation, config=RETRY, timeout_seconds=1, label='op')
        assert operation.calls == 3

    async def test_timeout_is_transient(self) -> None:
        calls = 0

        async def slow_then_fast() -> str:
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return 'done'

        assert await call_with_retry(slow_then_fast, config=RETRY, timeout_seconds=0.05, label='op') == 'done'
        assert calls == 2

    async def test_unknown_errors_propagate(self) -> None:
        operation = _Flaky([KeyError('bug')])

        with pytest.raises(KeyError):
            await call_with_retry(operation, config=RETRY, timeout_seconds=1, label='op')
        assert operation.calls == 1
