"""Hybrid retrieval: lexical BM25 and dense vectors fused with RRF.

Both paths run concurrently under one query timeout. A path that times out
or raises is dropped and reported in SearchResponse.degraded; fusion uses
whatever survived.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence

from code_search.clients.protocols import EmbeddingClient, VectorStore
from code_search.errors import CodeSearchError
from code_search.repositories.lexical_index import LexicalIndex
from code_search.repositories.snapshot import SnapshotStore
from code_search.schemas.chunking import make_chunk_id
from code_search.schemas.config import RetrievalConfig
from code_search.schemas.indexing import ChunkEntry, FileRecord
from code_search.schemas.vectors import RetrievalPath, SearchFilters, SearchResponse, SearchResult, VectorHit
from code_search.services.fusion import reciprocal_rank_fusion
from code_search.utils import Timer

__all__ = [
    'HybridSearchService',
]

logger = logging.getLogger(__name__)

type _Expansion = Mapping[str, Sequence[tuple[FileRecord, ChunkEntry]]]
type _VectorMatch = tuple[FileRecord, ChunkEntry, str | None]  # record, entry, stored text


class HybridSearchService:
    """Answers queries over an indexed tree.

    Vector hits are keyed by vector id; they are expanded to every chunk that
    shares the vector through the snapshot's reverse index, which is loaded
    lazily and reloaded by refresh().
    """

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        vector_store: VectorStore,
        lexical_index: LexicalIndex,
        snapshot_store: SnapshotStore,
        config: RetrievalConfig | None = None,
    ) -> None:
        self._embedder = embedding_client
        self._store = vector_store
        self._lexical = lexical_index
        self._snapshot_store = snapshot_store
        self._config = config or RetrievalConfig()
        self._expansion: _Expansion | None = None

    async def refresh(self) -> None:
        """Reload the vector id -> chunk expansion from the snapshot."""
        snapshot = await self._snapshot_store.load()
        self._expansion = snapshot.chunks_by_vector()
        logger.debug(f'[SEARCH] Loaded expansion for {len(self._expansion)} vectors')

    async def search(self, query_text: str, top_k: int = 10, filters: SearchFilters | None = None) -> SearchResponse:
        """Search chunks by text.

        Args:
            query_text: Natural language or identifier query.
            top_k: Maximum results.
            filters: Applied to each candidate list before fusion.

        Returns:
            Fused results plus the retrieval paths that degraded.
        """
        timer = Timer()
        if top_k <= 0 or not query_text.strip():
            return SearchResponse(query=query_text, results=[])

        candidates = top_k * self._config.candidate_multiplier
        vector_matches: dict[str, _VectorMatch] = {}
        tasks: dict[RetrievalPath, asyncio.Task[Sequence[str]]] = {
            'lexical': asyncio.create_task(self._lexical_candidates(query_text, candidates, filters)),
            'vector': asyncio.create_task(self._vector_candidates(query_text, candidates, filters, vector_matches)),
        }
        done, pending = await asyncio.wait(tasks.values(), timeout=self._config.query_timeout_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        rankings: dict[RetrievalPath, Sequence[str]] = {}
        degraded: list[RetrievalPath] = []
        for path, task in tasks.items():
            if task not in done:
                logger.warning(f'[SEARCH] {path} path timed out after {self._config.query_timeout_seconds}s')
                degraded.append(path)
            elif (exc := task.exception()) is not None:
                if not isinstance(exc, (CodeSearchError, TimeoutError)):
                    raise exc
                logger.warning(f'[SEARCH] {path} path failed: {type(exc).__name__}: {exc}', exc_info=exc)
                degraded.append(path)
            else:
                rankings[path] = task.result()

        fused = reciprocal_rank_fusion(
            rankings,
            k=self._config.rrf_k,
            weights={'lexical': self._config.lexical_weight, 'vector': self._config.vector_weight},
        )[:top_k]

        results = [self._result(chunk_id, score, ranks, vector_matches) for chunk_id, score, ranks in fused]
        logger.debug(f'[SEARCH] {query_text!r}: {len(results)} results, degraded={degraded}')
        return SearchResponse(query=query_text, results=results, degraded=degraded, elapsed_ms=timer.elapsed_ms())

    async def _lexical_candidates(self, query_text: str, limit: int, filters: SearchFilters | None) -> Sequence[str]:
        hits = await self._lexical.query_lexical(query_text, limit, filters)
        return [hit.chunk_id for hit in hits]

    async def _vector_candidates(
        self,
        query_text: str,
        limit: int,
        filters: SearchFilters | None,
        matches: dict[str, _VectorMatch],
    ) -> Sequence[str]:
        [query_vector] = await self._embedder.embed([query_text], intent='query')
        hits = await self._store.query_vector(query_vector, limit, filters)
        if self._expansion is None:
            await self.refresh()
        return self._expand(hits, filters, matches)[:limit]

    def _expand(
        self,
        hits: Sequence[VectorHit],
        filters: SearchFilters | None,
        matches: dict[str, _VectorMatch],
    ) -> list[str]:
        """Vector hits in score order → chunk ids, filtered, first occurrence kept."""
        expansion = self._expansion or {}
        chunk_ids: list[str] = []
        seen: set[str] = set()
        for hit in hits:
            for record, entry in expansion.get(hit.vector_id, ()):
                if filters is not None and not filters.matches(
                    path=record.path, language=record.language, is_test=record.is_test
                ):
                    continue
                chunk_id = make_chunk_id(record.path, entry.content_hash)
                if chunk_id not in seen:
                    seen.add(chunk_id)
                    chunk_ids.append(chunk_id)
                    matches[chunk_id] = (record, entry, hit.text)
        return chunk_ids

    def _result(
        self,
        chunk_id: str,
        score: float,
        ranks: Mapping[RetrievalPath, int],
        vector_matches: Mapping[str, _VectorMatch],
    ) -> SearchResult:
        document = self._lexical.get(chunk_id)
        if document is not None:
            return SearchResult(
                chunk_id=chunk_id,
                score=score,
                ranks=ranks,
                path=document.path,
                start_line=document.start_line,
                end_line=document.end_line,
                language=document.language,
                is_test=document.is_test,
                text=document.text,
            )
        match = vector_matches.get(chunk_id)
        if match is None:
            return SearchResult(chunk_id=chunk_id, score=score, ranks=ranks)
        record, entry, text = match
        return SearchResult(
            chunk_id=chunk_id,
            score=score,
            ranks=ranks,
            path=record.path,
            start_line=entry.start_line,
            end_line=entry.end_line,
            language=record.language,
            is_test=record.is_test,
            text=text,
        )
