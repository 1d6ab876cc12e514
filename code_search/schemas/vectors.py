"""Vector store and retrieval schemas."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Annotated, Literal

import pydantic

from code_search.schemas.base import StrictModel

__all__ = [
    'LexicalHit',
    'RetrievalPath',
    'SearchFilters',
    'SearchResponse',
    'SearchResult',
    'VectorHit',
    'VectorRecord',
]

type RetrievalPath = Literal['lexical', 'vector']


class VectorRecord(StrictModel):
    """A point to upsert. Keyed by vector id, shared by identical chunks.

    Payload is path-independent; file membership lives in the snapshot.
    """

    vector_id: str
    vector: Sequence[float]
    content_hash: str
    language: str
    text: str
    symbol_names: Sequence[str] = ()

    def payload(self) -> Mapping[str, object]:
        return {
            'content_hash': self.content_hash,
            'language': self.language,
            'text': self.text,
            'symbol_names': list(self.symbol_names),
        }


class VectorHit(StrictModel):
    """Nearest-neighbour result. Higher score is closer."""

    vector_id: str
    score: float
    text: str | None = None


class LexicalHit(StrictModel):
    """Lexical index result."""

    chunk_id: str
    score: float


class SearchFilters(StrictModel):
    """Candidate filters applied to each retrieval list before fusion."""

    exclude_tests: bool = False
    languages: Sequence[str] | None = None
    path_prefix: str | None = None

    def matches(self, *, path: str, language: str, is_test: bool) -> bool:
        if self.exclude_tests and is_test:
            return False
        if self.languages is not None and language not in self.languages:
            return False
        if self.path_prefix is not None and not path.startswith(self.path_prefix):
            return False
        return True


class SearchResult(StrictModel):
    """A fused retrieval result."""

    chunk_id: str
    score: Annotated[float, pydantic.Field(ge=0)]
    ranks: Mapping[RetrievalPath, int]  # 1-based rank in each list the chunk appeared in

    path: str | None = None
    start_line: int | None = None
    end_line: int | None = None
    language: str | None = None
    is_test: bool | None = None
    text: str | None = None

    @property
    def best_rank(self) -> int:
        return min(self.ranks.values())


class SearchResponse(StrictModel):
    """Search results plus the retrieval paths that did not respond."""

    query: str
    results: Sequence[SearchResult]
    degraded: Sequence[RetrievalPath] = ()
    elapsed_ms: int = 0
