"""Vector store repositories.

Typed VectorStore implementations over a concrete backend. Records are keyed
by vector id (derived from the chunk content hash); which files a vector
belongs to lives in the snapshot, not in the payload.
"""

from __future__ import annotations

from collections.abc import Awaitable, Sequence

import circuitbreaker
import httpx
import numpy as np
import qdrant_client.http.exceptions

from code_search.clients import _retry
from code_search.clients.qdrant import QdrantClient
from code_search.errors import StoreError
from code_search.schemas.vectors import SearchFilters, VectorHit, VectorRecord

__all__ = [
    'MemoryVectorStore',
    'QdrantVectorStore',
]


class MemoryVectorStore:
    """In-process store with exact cosine search over a numpy matrix."""

    def __init__(self) -> None:
        self._records: dict[str, VectorRecord] = {}
        self._unit: dict[str, np.ndarray] = {}
        self.upsert_calls = 0
        self.delete_calls = 0

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, vector_id: object) -> bool:
        return vector_id in self._records

    async def upsert(self, records: Sequence[VectorRecord]) -> int:
        self.upsert_calls += 1
        for record in records:
            vector = np.asarray(record.vector, dtype=np.float32)
            norm = float(np.linalg.norm(vector))
            self._records[record.vector_id] = record
            self._unit[record.vector_id] = vector / norm if norm > 0 else vector
        return len(records)

    async def delete(self, vector_ids: Sequence[str]) -> int:
        self.delete_calls += 1
        deleted = 0
        for vector_id in vector_ids:
            if self._records.pop(vector_id, None) is not None:
                del self._unit[vector_id]
                deleted += 1
        return deleted

    async def query_vector(
        self,
        vector: Sequence[float],
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> Sequence[VectorHit]:
        ids = [
            vector_id
            for vector_id, record in self._records.items()
            if filters is None or filters.languages is None or record.language in filters.languages
        ]
        if not ids or top_k <= 0:
            return []

        query = np.asarray(vector, dtype=np.float32)
        norm = float(np.linalg.norm(query))
        if norm > 0:
            query = query / norm
        scores = np.stack([self._unit[vector_id] for vector_id in ids]) @ query

        # Ties broken by id for a stable order
        order = sorted(range(len(ids)), key=lambda i: (-float(scores[i]), ids[i]))[:top_k]
        return [VectorHit(vector_id=ids[i], score=float(scores[i]), text=self._records[ids[i]].text) for i in order]

    async def existing(self, vector_ids: Sequence[str]) -> set[str]:
        return {vector_id for vector_id in vector_ids if vector_id in self._records}

    async def close(self) -> None:
        pass


class QdrantVectorStore:
    """VectorStore bound to one Qdrant collection.

    Translates qdrant-client, transport and circuit breaker failures into
    StoreError with the transient flag the pipeline retries on.
    """

    def __init__(self, client: QdrantClient, collection_name: str) -> None:
        self._client = client
        self._collection_name = collection_name

    async def ensure_collection(self, vector_dimension: int) -> None:
        await self._call('ensure collection', self._client.ensure_collection(self._collection_name, vector_dimension))

    async def upsert(self, records: Sequence[VectorRecord]) -> int:
        if not records:
            return 0
        points = [(record.vector_id, record.vector, record.payload()) for record in records]
        return await self._call('upsert', self._client.upsert(self._collection_name, points))

    async def delete(self, vector_ids: Sequence[str]) -> int:
        if not vector_ids:
            return 0
        return await self._call('delete', self._client.delete(self._collection_name, vector_ids))

    async def query_vector(
        self,
        vector: Sequence[float],
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> Sequence[VectorHit]:
        languages = filters.languages if filters is not None else None
        raw = await self._call(
            'query',
            self._client.query(self._collection_name, vector, limit=top_k, languages=languages),
        )
        return [VectorHit(vector_id=hit['id'], score=hit['score'], text=hit['text']) for hit in raw]

    async def existing(self, vector_ids: Sequence[str]) -> set[str]:
        if not vector_ids:
            return set()
        found = await self._call('retrieve', self._client.retrieve_ids(self._collection_name, vector_ids))
        return set(found)

    async def count(self) -> int:
        return await self._call('count', self._client.count(self._collection_name))

    async def close(self) -> None:
        await self._client.close()

    async def _call[T](self, action: str, operation: Awaitable[T]) -> T:
        try:
            return await operation
        except circuitbreaker.CircuitBreakerError as e:
            raise StoreError(f'Qdrant circuit open during {action}: {e}', transient=True) from e
        except TimeoutError as e:
            raise StoreError(f'Qdrant {action} timed out', transient=True) from e
        except (qdrant_client.http.exceptions.ApiException, httpx.HTTPError) as e:
            raise StoreError(
                f'Qdrant {action} failed: {type(e).__name__}: {e}',
                transient=_retry.is_retryable_qdrant_error(e) or _retry.is_retryable_httpx_error(e),
            ) from e
