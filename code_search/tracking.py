"""Call statistics for collaborator adapters.

Each adapter owns one tracker. Stats accumulate per call and are logged at
debug level when the adapter closes.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

__all__ = [
    'CallStats',
    'ConcurrencyTracker',
]

logger = logging.getLogger(__name__)


@dataclass
class CallStats:
    calls: int = 0
    failures: int = 0
    in_flight: int = 0
    peak_in_flight: int = 0
    busy_seconds: float = 0.0

    @property
    def avg_latency_ms(self) -> float:
        return round(self.busy_seconds / self.calls * 1000, 1) if self.calls else 0.0

    def __str__(self) -> str:
        return (
            f'{self.calls} calls, {self.failures} failed, peak {self.peak_in_flight} concurrent, '
            f'avg {self.avg_latency_ms}ms'
        )


class ConcurrencyTracker:
    """Counts calls, failures and peak concurrency for one adapter.

    Usage:
        tracker = ConcurrencyTracker('GEMINI')
        async with tracker.track():
            await client.call()
        tracker.stop()
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.stats = CallStats()

    @property
    def total_calls(self) -> int:
        return self.stats.calls

    @asynccontextmanager
    async def track(self) -> AsyncIterator[None]:
        stats = self.stats
        stats.calls += 1
        stats.in_flight += 1
        stats.peak_in_flight = max(stats.peak_in_flight, stats.in_flight)
        started = time.perf_counter()
        try:
            yield
        except BaseException:
            stats.failures += 1
            raise
        finally:
            stats.in_flight -= 1
            stats.busy_seconds += time.perf_counter() - started

    def stop(self) -> None:
        """Log the final stats. Safe to call more than once."""
        if self.stats.calls:
            logger.debug(f'[{self.name}] {self.stats}')
