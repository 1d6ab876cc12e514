"""End-to-end tests for the indexing pipeline over in-memory collaborators."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Sequence
from pathlib import Path

import pytest

from code_search.repositories.lexical_index import LexicalIndex
from code_search.repositories.snapshot import MemorySnapshotStore
from code_search.repositories.vector_store import MemoryVectorStore
from code_search.schemas.embeddings import TaskIntent
from code_search.schemas.indexing import FileOutcome, IndexingProgress
from code_search.services.indexing import IndexingService
from code_search.utils import vector_id_for
from tests.code_search.fakes import FlakyVectorStore, RecordingEmbedder, fast_pipeline, make_service, write_tree

SHARED_FUNCTION = """\
def shared_helper(values):
    total = 0
    for value in values:
        total += value
    return total
"""

PARSER = """\
def parse(text):
    return text.split(',')
"""

FORMATTER = """\
def format_row(cells):
    return ' | '.join(cells)
"""


class BrokenEmbedder(RecordingEmbedder):
    async def embed(self, texts: Sequence[str], *, intent: TaskIntent) -> Sequence[Sequence[float]]:
        raise RuntimeError('embedder bug')


class LagRecordingEmbedder(RecordingEmbedder):
    """Slow one-text-per-batch embedder noting how far chunking has run ahead of it."""

    def __init__(self, chunked: list[int]) -> None:
        super().__init__(batch_size=1, delay=0.01)
        self.lags: list[int] = []
        self._chunked = chunked

    async def embed(self, texts: Sequence[str], *, intent: TaskIntent) -> Sequence[Sequence[float]]:
        if intent == 'document':
            self.lags.append(self._chunked[-1] - len(self.batches))
        return await super().embed(texts, intent=intent)


type ServiceFactory = Callable[..., IndexingService]


@pytest.fixture
async def build() -> AsyncIterator[ServiceFactory]:
    """make_service() that closes every service it built."""
    created: list[IndexingService] = []

    def factory(**kwargs: object) -> IndexingService:
        service = make_service(**kwargs)  # type: ignore[arg-type]
        created.append(service)
        return service

    yield factory
    for service in created:
        await service.close()


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / 'repo'
    write_tree(root, {'src/parser.py': PARSER, 'src/formatter.py': FORMATTER})
    return root


class TestDeduplication:
    async def test_identical_chunks_share_one_embedding_and_vector(self, build: ServiceFactory, tmp_path: Path) -> None:
        root = tmp_path / 'repo'
        write_tree(root, {'a/helpers.py': SHARED_FUNCTION, 'b/helpers.py': SHARED_FUNCTION})
        embedder = RecordingEmbedder()
        store = MemoryVectorStore()
        snapshot_store = MemorySnapshotStore()
        service = build(embedder=embedder, store=store, snapshot_store=snapshot_store)

        result = await service.index_directory(root)

        assert result.files_indexed == 2
        assert result.chunks_created == 2
        assert result.chunks_deduplicated == 1
        assert result.embedding_calls == 1
        assert embedder.embedded_texts == [SHARED_FUNCTION.rstrip('\n')]
        assert len(store) == 1

        snapshot = await snapshot_store.load()
        [a_hash] = snapshot.files['a/helpers.py'].chunk_hashes
        [b_hash] = snapshot.files['b/helpers.py'].chunk_hashes
        assert a_hash == b_hash
        assert snapshot.dedup == {a_hash: vector_id_for(a_hash)}

    async def test_both_chunk_ids_are_searchable(self, build: ServiceFactory, tmp_path: Path) -> None:
        root = tmp_path / 'repo'
        write_tree(root, {'a/helpers.py': SHARED_FUNCTION, 'b/helpers.py': SHARED_FUNCTION})
        service = build()

        await service.index_directory(root)

        hits = await service.lexical_index.query_lexical('shared_helper', 10)
        assert sorted(h.chunk_id.split('#')[0] for h in hits) == ['a/helpers.py', 'b/helpers.py']

    async def test_dedup_outcomes(self, build: ServiceFactory, tmp_path: Path) -> None:
        root = tmp_path / 'repo'
        write_tree(root, {'a/helpers.py': SHARED_FUNCTION, 'b/helpers.py': SHARED_FUNCTION})
        service = build()

        result = await service.index_directory(root)

        assert sorted((o.chunks_embedded, o.chunks_deduplicated) for o in result.outcomes) == [(0, 1), (1, 0)]


class TestIncrementalSync:
    async def test_unchanged_tree_issues_no_calls(self, build: ServiceFactory, repo: Path) -> None:
        embedder = RecordingEmbedder()
        store = MemoryVectorStore()
        service = build(embedder=embedder, store=store)
        await service.index_directory(repo)
        batches, upserts = len(embedder.batches), store.upsert_calls

        result = await service.index_directory(repo)

        assert result.files_unchanged == 2
        assert result.files_indexed == 0
        assert result.embedding_calls == 0
        assert result.vectors_upserted == 0
        assert len(embedder.batches) == batches
        assert store.upsert_calls == upserts
        assert result.outcomes == []

    async def test_modified_file_is_reindexed_and_old_vector_swept(self, build: ServiceFactory, repo: Path) -> None:
        store = MemoryVectorStore()
        snapshot_store = MemorySnapshotStore()
        service = build(store=store, snapshot_store=snapshot_store)
        await service.index_directory(repo)
        [old_hash] = (await snapshot_store.load()).files['src/parser.py'].chunk_hashes

        (repo / 'src' / 'parser.py').write_text(PARSER.replace("','", "';'"))
        result = await service.index_directory(repo)

        assert result.files_indexed == 1
        assert result.files_unchanged == 1
        assert result.vectors_deleted == 1
        assert vector_id_for(old_hash) not in store
        assert len(store) == 2

    async def test_removed_file(self, build: ServiceFactory, repo: Path) -> None:
        store = MemoryVectorStore()
        snapshot_store = MemorySnapshotStore()
        service = build(store=store, snapshot_store=snapshot_store)
        await service.index_directory(repo)
        [removed_hash] = (await snapshot_store.load()).files['src/formatter.py'].chunk_hashes

        (repo / 'src' / 'formatter.py').unlink()
        result = await service.index_directory(repo)

        assert [(o.path, o.status) for o in result.outcomes] == [('src/formatter.py', 'removed')]
        assert result.files_removed == 1
        assert result.vectors_deleted == 1
        assert vector_id_for(removed_hash) not in store
        assert set((await snapshot_store.load()).files) == {'src/parser.py'}
        assert service.lexical_index.paths() == {'src/parser.py'}

    async def test_removing_one_copy_keeps_shared_vector(self, build: ServiceFactory, tmp_path: Path) -> None:
        root = tmp_path / 'repo'
        write_tree(root, {'a/helpers.py': SHARED_FUNCTION, 'b/helpers.py': SHARED_FUNCTION})
        store = MemoryVectorStore()
        service = build(store=store)
        await service.index_directory(root)

        (root / 'a' / 'helpers.py').unlink()
        result = await service.index_directory(root)

        assert result.vectors_deleted == 0
        assert len(store) == 1

    async def test_empty_file_is_recorded(self, build: ServiceFactory, tmp_path: Path) -> None:
        root = tmp_path / 'repo'
        write_tree(root, {'pkg/__init__.py': '', 'pkg/core.py': PARSER})
        service = build()

        first = await service.index_directory(root)
        second = await service.index_directory(root)

        assert first.files_indexed == 2
        assert second.files_unchanged == 2

    async def test_lexical_index_is_persisted(self, build: ServiceFactory, repo: Path, tmp_path: Path) -> None:
        lexical_path = tmp_path / 'state' / 'code.lexical.json'
        service = build(lexical_path=lexical_path)

        await service.index_directory(repo)

        assert LexicalIndex.load(lexical_path).paths() == {'src/parser.py', 'src/formatter.py'}


class TestSnapshotRecovery:
    async def test_missing_vector_forces_reindex(self, build: ServiceFactory, repo: Path) -> None:
        embedder = RecordingEmbedder()
        store = MemoryVectorStore()
        snapshot_store = MemorySnapshotStore()
        service = build(embedder=embedder, store=store, snapshot_store=snapshot_store)
        await service.index_directory(repo)
        [lost_hash] = (await snapshot_store.load()).files['src/parser.py'].chunk_hashes
        await store.delete([vector_id_for(lost_hash)])

        result = await service.index_directory(repo)

        assert result.files_forced == 1
        assert [(o.path, o.status) for o in result.outcomes] == [('src/parser.py', 'indexed')]
        assert vector_id_for(lost_hash) in store
        assert embedder.batches[-1] == [PARSER.rstrip('\n')]

    async def test_lost_lexical_index_rebuilds_without_embedding(self, build: ServiceFactory, repo: Path) -> None:
        embedder = RecordingEmbedder()
        store = MemoryVectorStore()
        snapshot_store = MemorySnapshotStore()
        await build(embedder=embedder, store=store, snapshot_store=snapshot_store).index_directory(repo)
        batches = len(embedder.batches)

        fresh = build(embedder=embedder, store=store, snapshot_store=snapshot_store, lexical_index=LexicalIndex())
        result = await fresh.index_directory(repo)

        assert result.files_forced == 2
        assert result.files_indexed == 2
        assert result.embedding_calls == 0
        assert len(embedder.batches) == batches
        assert fresh.lexical_index.paths() == {'src/parser.py', 'src/formatter.py'}


class TestFailureIsolation:
    async def test_partial_failure_keeps_previous_record(self, build: ServiceFactory, tmp_path: Path) -> None:
        root = tmp_path / 'repo'
        write_tree(root, {'calc.py': 'def original():\n    return 0\n'})
        store = MemoryVectorStore()
        snapshot_store = MemorySnapshotStore()
        embedder = RecordingEmbedder(batch_size=1, fail_when=lambda text: 'explode' in text)
        service = build(embedder=embedder, store=store, snapshot_store=snapshot_store)
        await service.index_directory(root)
        before = (await snapshot_store.load()).files['calc.py']

        (root / 'calc.py').write_text("def safe():\n    return 'fine'\n\n\ndef risky():\n    return 'explode'\n")
        result = await service.index_directory(root)

        [outcome] = result.outcomes
        assert outcome.status == 'partial'
        assert outcome.chunks_total == 2
        assert [(f.error_type, f.transient) for f in outcome.failures] == [('ProviderError', False)]
        assert result.files_failed == 1
        assert (await snapshot_store.load()).files['calc.py'] == before
        assert vector_id_for(before.chunk_hashes[0]) in store
        assert [h.chunk_id for h in await service.lexical_index.query_lexical('original', 5)] == [
            f'calc.py#{before.chunk_hashes[0]}'
        ]

    async def test_failed_file_does_not_block_others(self, build: ServiceFactory, repo: Path) -> None:
        write_tree(repo, {'src/bad.py': "def bad():\n    return 'explode'\n"})
        embedder = RecordingEmbedder(batch_size=1, fail_when=lambda text: 'explode' in text)
        snapshot_store = MemorySnapshotStore()
        service = build(embedder=embedder, snapshot_store=snapshot_store)

        result = await service.index_directory(repo)

        statuses = {o.path: o.status for o in result.outcomes}
        assert statuses == {'src/bad.py': 'failed', 'src/formatter.py': 'indexed', 'src/parser.py': 'indexed'}
        assert set((await snapshot_store.load()).files) == {'src/formatter.py', 'src/parser.py'}

    async def test_failed_file_is_retried_next_run(self, build: ServiceFactory, repo: Path) -> None:
        embedder = RecordingEmbedder(transient_failures=3)  # one run of max_attempts
        service = build(embedder=embedder)

        first = await service.index_directory(repo)
        second = await service.index_directory(repo)

        assert first.files_failed == 2
        assert all(f.transient for o in first.outcomes for f in o.failures)
        assert second.files_indexed == 2

    async def test_transient_provider_error_is_retried(self, build: ServiceFactory, repo: Path) -> None:
        embedder = RecordingEmbedder(transient_failures=2)
        service = build(embedder=embedder)

        result = await service.index_directory(repo)

        assert result.files_indexed == 2
        assert result.failures == []
        assert len(embedder.batches) == 1

    async def test_transient_upsert_error_is_retried_without_reembedding(
        self, build: ServiceFactory, repo: Path
    ) -> None:
        embedder = RecordingEmbedder()
        store = FlakyVectorStore(upsert_failures=2)
        service = build(embedder=embedder, store=store)

        result = await service.index_directory(repo)

        assert result.files_indexed == 2
        assert len(embedder.batches) == 1
        assert len(store) == 2

    async def test_permanent_upsert_error_fails_batch(self, build: ServiceFactory, repo: Path) -> None:
        embedder = RecordingEmbedder()
        store = FlakyVectorStore(upsert_failures=1, transient=False)
        snapshot_store = MemorySnapshotStore()
        service = build(embedder=embedder, store=store, snapshot_store=snapshot_store)

        result = await service.index_directory(repo)

        assert {o.status for o in result.outcomes} == {'failed'}
        assert {f.error_type for o in result.outcomes for f in o.failures} == {'StoreError'}
        assert len(embedder.batches) == 1
        assert (await snapshot_store.load()).files == {}

    async def test_unknown_error_aborts_run(self, build: ServiceFactory, repo: Path) -> None:
        service = build(embedder=BrokenEmbedder())

        with pytest.raises(RuntimeError, match='embedder bug'):
            await service.index_directory(repo)


class TestCancellation:
    async def test_cancel_stops_new_batches(self, build: ServiceFactory, tmp_path: Path) -> None:
        root = tmp_path / 'repo'
        write_tree(root, {f'src/mod_{i}.py': f'def handler_{i}():\n    return {i}\n' for i in range(6)})
        embedder = RecordingEmbedder()
        snapshot_store = MemorySnapshotStore()
        service = build(embedder=embedder, snapshot_store=snapshot_store)

        def on_progress(progress: IndexingProgress) -> None:
            if progress.phase == 'chunk':
                service.cancel()

        result = await service.index_directory(root, on_progress=on_progress)

        assert result.files_cancelled == 6
        assert embedder.batches == []
        assert (await snapshot_store.load()).files == {}

    async def test_next_run_resumes(self, build: ServiceFactory, repo: Path) -> None:
        service = build()
        service.cancel()

        # cancel() applies to the run in progress; a new run starts clean
        result = await service.index_directory(repo)

        assert result.files_indexed == 2


class TestProgressAndStreaming:
    async def test_progress_phases(self, build: ServiceFactory, repo: Path) -> None:
        updates: list[IndexingProgress] = []
        service = build()

        await service.index_directory(repo, on_progress=updates.append)

        phases = [u.phase for u in updates]
        assert phases[0] == 'scan'
        assert phases[-1] == 'complete'
        assert {'chunk', 'embed', 'commit'} <= set(phases)
        assert all(u.current <= u.total for u in updates)

    async def test_stream_yields_each_outcome(self, build: ServiceFactory, repo: Path) -> None:
        service = build()

        outcomes: list[FileOutcome] = [outcome async for outcome in service.stream(repo)]

        assert sorted(o.path for o in outcomes) == ['src/formatter.py', 'src/parser.py']
        assert all(o.status == 'indexed' for o in outcomes)


class TestBackpressure:
    async def test_chunking_waits_for_slow_embedder(self, build: ServiceFactory, tmp_path: Path) -> None:
        root = tmp_path / 'repo'
        write_tree(root, {f'src/step_{i}.py': f'def step_{i}():\n    return {i}\n' for i in range(30)})
        chunked = [0]
        embedder = LagRecordingEmbedder(chunked)
        service = build(embedder=embedder, pipeline=fast_pipeline(queue_size=1, embed_concurrency=1))

        def on_progress(progress: IndexingProgress) -> None:
            if progress.phase == 'chunk':
                chunked.append(progress.current)

        result = await service.index_directory(root, on_progress=on_progress)

        assert result.files_indexed == 30
        assert len(embedder.batches) == 30
        # One batch in the embedder, one queued, one held by each of the two blocked chunk workers
        assert max(embedder.lags) <= 4
