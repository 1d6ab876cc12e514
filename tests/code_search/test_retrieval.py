"""Tests for hybrid retrieval over an indexed tree."""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Sequence
from pathlib import Path

import pytest

from code_search.errors import ProviderError
from code_search.repositories.lexical_index import LexicalIndex
from code_search.repositories.snapshot import MemorySnapshotStore
from code_search.repositories.vector_store import MemoryVectorStore
from code_search.schemas.chunking import make_chunk_id
from code_search.schemas.config import RetrievalConfig
from code_search.schemas.embeddings import TaskIntent
from code_search.schemas.vectors import LexicalHit, SearchFilters
from code_search.services.indexing import IndexingService
from code_search.services.retrieval import HybridSearchService
from tests.code_search.fakes import RecordingEmbedder, make_service, write_tree

TREE = {
    'src/tokenizer.py': 'def tokenize_source(text):\n    return text.split()\n',
    'src/checksum.py': 'def compute_checksum(data):\n    return sum(data) % 256\n',
    'src/retry_policy.py': 'def backoff_delay(attempt):\n    return min(2 ** attempt, 60)\n',
    'tests/test_tokenizer.py': "def test_tokenize_source():\n    assert tokenize_source('a b') == ['a', 'b']\n",
    'lib/tokenizer.cpp': 'int tokenize_source(const char* text) {\n    return 0;\n}\n',
}


class QueryFailingEmbedder(RecordingEmbedder):
    def __init__(self, exc: Exception) -> None:
        super().__init__()
        self._exc = exc

    async def embed(self, texts: Sequence[str], *, intent: TaskIntent) -> Sequence[Sequence[float]]:
        if intent == 'query':
            raise self._exc
        return await super().embed(texts, intent=intent)


@pytest.fixture
async def indexed(tmp_path: Path) -> AsyncIterator[IndexingService]:
    root = tmp_path / 'repo'
    write_tree(root, TREE)
    service = make_service(store=MemoryVectorStore(), snapshot_store=MemorySnapshotStore())
    await service.index_directory(root)
    yield service
    await service.close()


@pytest.fixture
async def search(indexed: IndexingService) -> HybridSearchService:
    service = indexed.search_service()
    await service.refresh()
    return service


class TestHybridSearch:
    async def test_identifier_query_ranks_definition_first(self, search: HybridSearchService) -> None:
        response = await search.search('compute_checksum', top_k=3)

        assert response.degraded == []
        top = response.results[0]
        assert top.path == 'src/checksum.py'
        assert set(top.ranks) == {'lexical', 'vector'}
        assert top.start_line == 1
        assert top.text is not None and 'compute_checksum' in top.text

    async def test_results_are_sorted_and_truncated(self, search: HybridSearchService) -> None:
        response = await search.search('tokenize_source text', top_k=2)

        assert len(response.results) == 2
        scores = [r.score for r in response.results]
        assert scores == sorted(scores, reverse=True)

    async def test_chunk_ids_are_unique(self, search: HybridSearchService) -> None:
        response = await search.search('tokenize_source', top_k=10)

        ids = [r.chunk_id for r in response.results]
        assert len(ids) == len(set(ids))

    @pytest.mark.parametrize('query', ['', '   '])
    async def test_blank_query(self, search: HybridSearchService, query: str) -> None:
        response = await search.search(query)

        assert response.results == []

    async def test_zero_top_k(self, search: HybridSearchService) -> None:
        assert (await search.search('tokenize_source', top_k=0)).results == []

    async def test_deterministic(self, search: HybridSearchService) -> None:
        first = await search.search('tokenize_source checksum', top_k=5)
        second = await search.search('tokenize_source checksum', top_k=5)

        assert [(r.chunk_id, r.score) for r in first.results] == [(r.chunk_id, r.score) for r in second.results]


class TestFilters:
    async def test_exclude_tests(self, search: HybridSearchService) -> None:
        response = await search.search('tokenize_source', top_k=10, filters=SearchFilters(exclude_tests=True))

        assert response.results
        assert all(r.is_test is False for r in response.results)
        assert all(not r.chunk_id.startswith('tests/') for r in response.results)

    async def test_path_prefix(self, search: HybridSearchService) -> None:
        response = await search.search('tokenize_source', top_k=10, filters=SearchFilters(path_prefix='lib/'))

        assert [r.path for r in response.results] == ['lib/tokenizer.cpp']

    async def test_languages(self, search: HybridSearchService) -> None:
        response = await search.search('tokenize_source', top_k=10, filters=SearchFilters(languages=['cpp']))

        assert {r.language for r in response.results} == {'cpp'}


class TestVectorExpansion:
    async def test_shared_vector_expands_to_every_copy(self, tmp_path: Path) -> None:
        root = tmp_path / 'repo'
        body = 'def normalize_path(value):\n    return value.replace(chr(92), "/")\n'
        write_tree(root, {'a/paths.py': body, 'b/paths.py': body})
        store = MemoryVectorStore()
        snapshot_store = MemorySnapshotStore()
        service = make_service(store=store, snapshot_store=snapshot_store)
        await service.index_directory(root)
        search = service.search_service()
        await search.refresh()

        response = await search.search('normalize_path', top_k=5)
        await service.close()

        assert len(store) == 1
        assert sorted(r.path for r in response.results) == ['a/paths.py', 'b/paths.py']
        assert all(set(r.ranks) == {'lexical', 'vector'} for r in response.results)

    async def test_vector_only_results_carry_metadata(self, indexed: IndexingService) -> None:
        search = HybridSearchService(
            RecordingEmbedder(),
            indexed._store,  # noqa: SLF001
            LexicalIndex(),
            indexed._snapshot_store,  # noqa: SLF001
        )

        response = await search.search('compute_checksum', top_k=5)

        assert response.results
        for result in response.results:
            assert set(result.ranks) == {'vector'}
            assert result.path is not None
            assert result.chunk_id.startswith(f'{result.path}#')
            assert result.text is not None
            assert result.start_line == 1

    async def test_expansion_loads_lazily(self, indexed: IndexingService) -> None:
        search = indexed.search_service()

        response = await search.search('backoff_delay', top_k=1)

        [result] = response.results
        assert set(result.ranks) == {'lexical', 'vector'}
        record = (await indexed._snapshot_store.load()).files['src/retry_policy.py']  # noqa: SLF001
        assert result.chunk_id == make_chunk_id(record.path, record.chunk_hashes[0])


class TestDegradation:
    async def test_slow_vector_path_times_out(self, indexed: IndexingService) -> None:
        search = HybridSearchService(
            RecordingEmbedder(delay=1.0),
            indexed._store,  # noqa: SLF001
            indexed.lexical_index,
            indexed._snapshot_store,  # noqa: SLF001
            RetrievalConfig(query_timeout_seconds=0.05),
        )

        response = await search.search('compute_checksum', top_k=3)

        assert response.degraded == ['vector']
        assert response.results[0].path == 'src/checksum.py'
        assert set(response.results[0].ranks) == {'lexical'}

    async def test_provider_error_degrades_vector_path(self, indexed: IndexingService) -> None:
        search = HybridSearchService(
            QueryFailingEmbedder(ProviderError('503 Service Unavailable', transient=True)),
            indexed._store,  # noqa: SLF001
            indexed.lexical_index,
            indexed._snapshot_store,  # noqa: SLF001
        )

        response = await search.search('backoff_delay', top_k=3)

        assert response.degraded == ['vector']
        assert response.results[0].path == 'src/retry_policy.py'

    async def test_unknown_error_propagates(self, indexed: IndexingService) -> None:
        search = HybridSearchService(
            QueryFailingEmbedder(RuntimeError('bad vector')),
            indexed._store,  # noqa: SLF001
            indexed.lexical_index,
            indexed._snapshot_store,  # noqa: SLF001
        )

        with pytest.raises(RuntimeError, match='bad vector'):
            await search.search('backoff_delay')

    async def test_slow_lexical_path_times_out(self, indexed: IndexingService, monkeypatch: pytest.MonkeyPatch) -> None:
        def slow_rank(*args: object) -> list[LexicalHit]:
            time.sleep(0.5)
            return []

        monkeypatch.setattr(LexicalIndex, '_rank', staticmethod(slow_rank))
        search = HybridSearchService(
            RecordingEmbedder(),
            indexed._store,  # noqa: SLF001
            indexed.lexical_index,
            indexed._snapshot_store,  # noqa: SLF001
            RetrievalConfig(query_timeout_seconds=0.05),
        )

        started = time.perf_counter()
        response = await search.search('compute_checksum', top_k=3)
        elapsed = time.perf_counter() - started

        assert response.degraded == ['lexical']
        assert elapsed < 0.4
        assert response.results
        assert all(set(r.ranks) == {'vector'} for r in response.results)
