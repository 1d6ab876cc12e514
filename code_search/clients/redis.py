"""Async Redis client for the persisted index snapshot.

Thin wrapper around redis.asyncio with connection pooling and concurrency
control. Hash operations back the RedisSnapshotStore: one hash per file
record and one hash for the dedup table. MULTI/EXEC transactions give atomic
per-file record replacement.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping, Sequence

import redis.asyncio as aioredis

__all__ = [
    'RedisClient',
]

logger = logging.getLogger(__name__)


class RedisClient:
    """Async Redis client with connection pooling and concurrency control.

    Binary mode (decode_responses=False); string values are UTF-8 encoded on
    write and returned as bytes.
    """

    def __init__(
        self,
        url: str = 'redis://127.0.0.1:6379/0',
        *,
        max_connections: int = 50,
        max_concurrent: int = 20,
        socket_timeout: float = 30.0,
        socket_connect_timeout: float = 2.0,
    ) -> None:
        pool = aioredis.ConnectionPool.from_url(
            url,
            max_connections=max_connections,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            decode_responses=False,
        )
        self._client = aioredis.Redis(connection_pool=pool)
        self._semaphore = asyncio.Semaphore(max_concurrent)

    async def ping(self) -> bool:
        """Verify Redis connectivity."""
        return await self._client.ping()

    # --- Hash operations ---

    async def hgetall(self, name: str) -> Mapping[bytes, bytes]:
        """Get all fields and values from a hash."""
        async with self._semaphore:
            return await self._client.hgetall(name)

    async def hset(self, name: str, mapping: Mapping[str, str | bytes]) -> int:
        """Set multiple hash fields."""
        async with self._semaphore:
            return await self._client.hset(name, mapping=_encode(mapping))

    async def hdel(self, name: str, fields: Sequence[str]) -> int:
        """Delete hash fields."""
        if not fields:
            return 0
        async with self._semaphore:
            return await self._client.hdel(name, *[f.encode() for f in fields])

    # --- Key management ---

    async def delete(self, *names: str) -> int:
        """Delete one or more keys."""
        async with self._semaphore:
            return await self._client.delete(*names)

    async def scan_iter(self, *, match: str, count: int = 1000) -> AsyncIterator[str]:
        """Iterate keys matching glob pattern. Decodes bytes to strings.

        SCAN is cursor-based and non-blocking. The semaphore is NOT held
        across the full iteration.
        """
        async for key in self._client.scan_iter(match=match, count=count):
            yield key.decode()

    def pipeline(self, *, transaction: bool = False) -> aioredis.client.Pipeline:
        """Pipeline for batching commands in one round-trip.

        With transaction=True the commands run as one MULTI/EXEC block, so
        readers never observe a partially applied update.
        """
        return self._client.pipeline(transaction=transaction)

    async def close(self) -> None:
        """Close connection pool."""
        await self._client.aclose()


def _encode(mapping: Mapping[str, str | bytes]) -> Mapping[bytes, bytes]:
    return {k.encode(): (v if isinstance(v, bytes) else v.encode()) for k, v in mapping.items()}
