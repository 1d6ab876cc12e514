"""Low-level Qdrant vector database client.

Thin wrapper around qdrant-client. Handles API calls only - no business logic.
Type translation and error mapping happen in the repository layer.

Uses AsyncQdrantClient for non-blocking I/O in async contexts.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping, Sequence
from typing import Any, TypedDict

import httpx
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchAny,
    PayloadSchemaType,
    PointStruct,
    VectorParams,
)

from code_search.clients import _retry
from code_search.tracking import ConcurrencyTracker

logger = logging.getLogger(__name__)

__all__ = [
    'QdrantClient',
    'ScoredPointDict',
]


class ScoredPointDict(TypedDict):
    """Raw nearest-neighbour result from Qdrant."""

    id: str
    score: float
    text: str | None


class QdrantClient:
    """Low-level async Qdrant client for vector operations.

    Collection name is passed explicitly to each method - no default collection.
    """

    DEFAULT_URL = 'http://localhost:6333'
    DEFAULT_MAX_CONCURRENT_UPSERTS = 8

    # Must pass explicit limits to override qdrant-client's localhost defaults
    # which disable keep-alive (max_keepalive_connections=0)
    DEFAULT_TIMEOUT = 10
    DEFAULT_POOL_SIZE = (os.cpu_count() or 8) * 2

    def __init__(
        self,
        url: str = DEFAULT_URL,
        max_concurrent_upserts: int = DEFAULT_MAX_CONCURRENT_UPSERTS,
        timeout: int = DEFAULT_TIMEOUT,
        pool_size: int = DEFAULT_POOL_SIZE,
    ) -> None:
        """Initialize client.

        Args:
            url: Qdrant server URL.
            max_concurrent_upserts: Max concurrent upsert API calls.
            timeout: HTTP timeout in seconds.
            pool_size: HTTP connection pool size (default 2x CPU count).
        """
        self._url = url
        limits = httpx.Limits(max_connections=pool_size, max_keepalive_connections=pool_size)
        self._client = AsyncQdrantClient(url=url, timeout=timeout, limits=limits)
        self._upsert_semaphore = asyncio.Semaphore(max_concurrent_upserts)
        self._tracker = ConcurrencyTracker('QDRANT_UPSERT')

    async def ensure_collection(self, collection_name: str, vector_dimension: int) -> None:
        """Create the collection with a cosine 'dense' vector and a language index if missing."""
        collections = await self._client.get_collections()
        if not any(c.name == collection_name for c in collections.collections):
            logger.info(f'Creating Qdrant collection {collection_name} (dim={vector_dimension})')
            await self._client.create_collection(
                collection_name=collection_name,
                vectors_config={'dense': VectorParams(size=vector_dimension, distance=Distance.COSINE)},
            )
        await self._client.create_payload_index(
            collection_name=collection_name,
            field_name='language',
            field_schema=PayloadSchemaType.KEYWORD,
        )

    @_retry.qdrant_breaker
    async def upsert(
        self,
        collection_name: str,
        points: Sequence[tuple[str, Sequence[float], Mapping[str, Any]]],  # (id, dense vector, payload)
    ) -> int:
        """Insert or update points. Returns number of points upserted."""
        point_structs = [
            PointStruct(id=point_id, vector={'dense': list(vector)}, payload=dict(payload))
            for point_id, vector, payload in points
        ]
        async with self._upsert_semaphore, self._tracker.track():
            await self._client.upsert(collection_name=collection_name, points=point_structs)
        return len(point_structs)

    @_retry.qdrant_breaker
    async def query(
        self,
        collection_name: str,
        vector: Sequence[float],
        *,
        limit: int,
        languages: Sequence[str] | None = None,
    ) -> Sequence[ScoredPointDict]:
        """Dense nearest-neighbour search, optionally restricted to languages."""
        query_filter = None
        if languages:
            query_filter = Filter(must=[FieldCondition(key='language', match=MatchAny(any=list(languages)))])

        results = await self._client.query_points(
            collection_name=collection_name,
            query=list(vector),
            using='dense',
            limit=limit,
            query_filter=query_filter,
            with_payload=['text'],
        )
        return [
            ScoredPointDict(
                id=str(hit.id),
                score=hit.score,
                text=hit.payload.get('text') if hit.payload else None,
            )
            for hit in results.points
        ]

    @_retry.qdrant_breaker
    async def retrieve_ids(self, collection_name: str, point_ids: Sequence[str]) -> Sequence[str]:
        """Ids among ``point_ids`` that exist in the collection."""
        results = await self._client.retrieve(
            collection_name=collection_name,
            ids=list(point_ids),
            with_payload=False,
            with_vectors=False,
        )
        return [str(point.id) for point in results]

    @_retry.qdrant_breaker
    async def delete(self, collection_name: str, point_ids: Sequence[str]) -> int:
        """Delete points by ID.

        Returns:
            Number of points requested for deletion (not confirmed count).
            Qdrant's delete is idempotent - non-existent IDs are silently ignored.
        """
        await self._client.delete(collection_name=collection_name, points_selector=list(point_ids))
        return len(point_ids)

    async def count(self, collection_name: str) -> int:
        """Get total point count in collection."""
        info = await self._client.get_collection(collection_name)
        return info.points_count or 0

    async def close(self) -> None:
        self._tracker.stop()
        await self._client.close()
