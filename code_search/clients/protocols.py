"""Protocol definitions for indexing collaborators.

The pipeline and retrieval engine depend only on these shapes. Adapters
raise ProviderError / StoreError with a ``transient`` flag; any other
exception is treated as a bug and propagates.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from code_search.schemas.embeddings import TaskIntent
from code_search.schemas.vectors import SearchFilters, VectorHit, VectorRecord

__all__ = [
    'EmbeddingClient',
    'VectorStore',
]


class EmbeddingClient(Protocol):
    """Protocol for embedding providers."""

    @property
    def max_batch_size(self) -> int:
        """Largest number of texts accepted by one embed call."""
        ...

    async def embed(self, texts: Sequence[str], *, intent: TaskIntent) -> Sequence[Sequence[float]]:
        """Embed texts into vectors.

        Args:
            texts: At most max_batch_size texts.
            intent: 'document' for indexing, 'query' for search.
                Each provider translates to its specific format.

        Returns:
            One vector per input text, in order.

        Raises:
            ProviderError: With transient=True for timeouts, rate limits and 5xx.
        """
        ...

    async def close(self) -> None:
        """Release resources. No-op for clients without external connections."""
        ...


class VectorStore(Protocol):
    """Protocol for vector stores. Entries are keyed by vector id."""

    async def upsert(self, records: Sequence[VectorRecord]) -> int:
        """Insert or replace records. Returns the number written."""
        ...

    async def delete(self, vector_ids: Sequence[str]) -> int:
        """Delete records. Missing ids are ignored."""
        ...

    async def query_vector(
        self,
        vector: Sequence[float],
        top_k: int,
        filters: SearchFilters | None = None,
    ) -> Sequence[VectorHit]:
        """Nearest neighbours, best first.

        Stores apply the filters their payload supports (language); path and
        test filters are applied by the caller after expanding to chunks.
        """
        ...

    async def existing(self, vector_ids: Sequence[str]) -> set[str]:
        """Subset of ``vector_ids`` present in the store."""
        ...

    async def close(self) -> None:
        ...
