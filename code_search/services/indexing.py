"""Indexing service - orchestrates the code indexing pipeline.

Coordinates: scan → diff → chunk → dedup → embed → upsert → commit.

Architecture:
- Chunking runs on a CPU executor; embed and upsert run as asyncio workers
  with their own bounds, connected by bounded queues (backpressure)
- Chunk hashes already in the dedup table are never re-embedded; misses are
  shared within a run through one future per hash
- A file's record is replaced only once every chunk resolves; any chunk
  failure withholds the commit and keeps the old record
- Transient collaborator errors are retried with backoff; other failures
  stay local to the chunks (and files) they affect
- Unknown worker exceptions abort the run (fail-fast)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence, Set
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import attrs

from code_search.clients import create_embedding_client
from code_search.clients.protocols import EmbeddingClient, VectorStore
from code_search.clients.qdrant import QdrantClient
from code_search.clients.redis import RedisClient
from code_search.errors import CodeSearchError, ProviderError, RunCancelled, StoreError, is_transient
from code_search.repositories.lexical_index import LexicalDocument, LexicalIndex
from code_search.repositories.snapshot import MemorySnapshotStore, RedisSnapshotStore, SnapshotStore
from code_search.repositories.vector_store import MemoryVectorStore, QdrantVectorStore
from code_search.schemas.chunking import Chunk
from code_search.schemas.config import CodeSearchConfig, DiscoveryConfig, PipelineConfig, RetrievalConfig
from code_search.schemas.indexing import (
    CHUNK_STRATEGY_VERSION,
    ChunkEntry,
    ChunkFailure,
    FileOutcome,
    FileRecord,
    IndexSnapshot,
    IndexingPhase,
    IndexingProgress,
    IndexingResult,
    ProgressCallback,
    SourceFile,
    SyncDiff,
)
from code_search.schemas.vectors import VectorRecord
from code_search.services import sync
from code_search.services.chunking import ChunkingService
from code_search.services.classification import is_test_path
from code_search.services.discovery import walk_files
from code_search.services.retrieval import HybridSearchService
from code_search.services.retry import call_with_retry
from code_search.utils import Timer, vector_id_for

__all__ = [
    'IndexingService',
    'PipelineCounters',
    'create_indexing_service',
]

logger = logging.getLogger(__name__)


class IndexingService:
    """Orchestrates incremental indexing of a source tree.

    One run at a time per snapshot; callers serialize concurrent runs.
    """

    def __init__(
        self,
        chunking_service: ChunkingService,
        embedding_client: EmbeddingClient,
        vector_store: VectorStore,
        snapshot_store: SnapshotStore,
        lexical_index: LexicalIndex,
        *,
        pipeline: PipelineConfig | None = None,
        discovery: DiscoveryConfig | None = None,
        lexical_path: Path | None = None,
    ) -> None:
        self._chunking = chunking_service
        self._embedder = embedding_client
        self._store = vector_store
        self._snapshot_store = snapshot_store
        self._lexical = lexical_index
        self._pipeline = pipeline or PipelineConfig()
        self._discovery = discovery or DiscoveryConfig()
        self._lexical_path = lexical_path
        self._cancelled = asyncio.Event()

    @property
    def lexical_index(self) -> LexicalIndex:
        return self._lexical

    def search_service(self, config: RetrievalConfig | None = None) -> HybridSearchService:
        """Retrieval over this service's stores. Call refresh() on it after each run."""
        return HybridSearchService(self._embedder, self._store, self._lexical, self._snapshot_store, config)

    def cancel(self) -> None:
        """Stop issuing new batches. In-flight batches finish or fail."""
        logger.info('[PIPELINE] Cancellation requested')
        self._cancelled.set()

    async def stream(self, root: Path, *, on_progress: ProgressCallback | None = None) -> AsyncIterator[FileOutcome]:
        """Index ``root``, yielding each file's outcome as it is decided.

        Closing the generator early cancels the run.
        """
        outcomes: asyncio.Queue[FileOutcome | None] = asyncio.Queue()
        run = asyncio.create_task(self._run(root, outcomes.put_nowait, on_progress))
        run.add_done_callback(lambda _: outcomes.put_nowait(None))
        try:
            while (outcome := await outcomes.get()) is not None:
                yield outcome
            await run
        finally:
            if not run.done():
                run.cancel()
            await asyncio.gather(run, return_exceptions=True)

    async def index_directory(self, root: Path, *, on_progress: ProgressCallback | None = None) -> IndexingResult:
        """Index ``root`` and summarize the run.

        Returns:
            IndexingResult with per-file outcomes and counters.
        """
        timer = Timer()
        outcomes: list[FileOutcome] = []
        counters = await self._run(root, outcomes.append, on_progress)

        by_status = {status: 0 for status in ('indexed', 'partial', 'failed', 'removed', 'cancelled')}
        for outcome in outcomes:
            by_status[outcome.status] += 1

        return IndexingResult(
            files_scanned=counters.files_scanned,
            files_indexed=by_status['indexed'],
            files_unchanged=counters.files_unchanged,
            files_removed=by_status['removed'],
            files_failed=by_status['failed'] + by_status['partial'],
            files_cancelled=by_status['cancelled'],
            files_forced=counters.files_forced,
            chunks_created=counters.chunks_created,
            chunks_deduplicated=counters.chunks_deduplicated,
            embedding_calls=counters.embedding_calls,
            vectors_upserted=counters.vectors_upserted,
            vectors_deleted=counters.vectors_deleted,
            elapsed_seconds=round(timer.elapsed(), 3),
            outcomes=sorted(outcomes, key=lambda o: o.path),
        )

    async def close(self) -> None:
        """Release the chunking executor and collaborator connections."""
        self._chunking.shutdown()
        await self._embedder.close()
        await self._store.close()

    # --- Run ---

    async def _run(
        self,
        root: Path,
        emit: Callable[[FileOutcome], None],
        on_progress: ProgressCallback | None,
    ) -> PipelineCounters:
        self._cancelled.clear()
        timer = Timer()
        counters = PipelineCounters()
        progress = _Progress(on_progress)

        # PHASE 1: Scan and diff
        files = await asyncio.to_thread(walk_files, root, self._discovery)
        counters.files_scanned = len(files)
        progress.report('scan', len(files), len(files))

        writer = sync.SnapshotWriter(self._snapshot_store)
        snapshot = await writer.load()
        # Records without lexical entries (e.g. a crash before the index was saved)
        lexical_paths = self._lexical.paths()
        stale = {path for path, record in snapshot.files.items() if record.chunks and path not in lexical_paths}
        sync_diff = sync.diff({f.path: f.content_hash for f in files}, snapshot, force=stale)
        sync_diff = await self._verify(sync_diff, snapshot, writer)
        counters.files_unchanged = len(sync_diff.unchanged)
        counters.files_forced = len(sync_diff.inconsistent)
        logger.info(
            f'[SCAN] {len(sync_diff.added)} added, {len(sync_diff.modified)} modified '
            f'({len(sync_diff.inconsistent)} forced), {len(sync_diff.removed)} removed, '
            f'{len(sync_diff.unchanged)} unchanged'
        )

        # PHASE 2: Removed files
        for path in sync_diff.removed:
            await self._remove(path, writer, emit)

        # PHASE 3: Chunk → embed → upsert → commit
        to_index = set(sync_diff.to_index)
        sources = [f for f in files if f.path in to_index]
        if sources:
            await self._index(sources, writer, emit, counters, progress)

        # PHASE 4: Sweep unreferenced dedup entries and vectors
        counters.vectors_deleted = await self._sweep(writer)

        if self._lexical_path is not None:
            self._lexical.save(self._lexical_path)

        progress.report('complete', len(sources), len(sources))
        logger.info(f'[PIPELINE] Run complete in {timer.elapsed():.1f}s: {counters}')
        return counters

    async def _verify(self, sync_diff: SyncDiff, snapshot: IndexSnapshot, writer: sync.SnapshotWriter) -> SyncDiff:
        if not self._pipeline.verify_vectors:
            return sync_diff
        try:
            adjusted, dangling = await call_with_retry(
                lambda: sync.verify_vectors(sync_diff, snapshot, self._store),
                config=self._pipeline.retry,
                timeout_seconds=self._pipeline.call_timeout_seconds,
                label='verify vectors',
            )
        except (StoreError, TimeoutError) as e:
            logger.warning(f'[SNAPSHOT] Vector verification skipped: {type(e).__name__}: {e}', exc_info=True)
            return sync_diff
        if dangling:
            await writer.drop_dedup(dangling)
        return adjusted

    async def _remove(self, path: str, writer: sync.SnapshotWriter, emit: Callable[[FileOutcome], None]) -> None:
        try:
            await self._write(lambda: writer.remove_file(path), label=f'remove {path}')
        except (StoreError, TimeoutError) as e:
            logger.warning(f'[COMMIT] Failed to remove {path}: {e}')
            emit(FileOutcome(path=path, status='failed', message=f'{type(e).__name__}: {e}'))
            return
        self._lexical.remove_file(path)
        logger.debug(f'[COMMIT] Removed {path}')
        emit(FileOutcome(path=path, status='removed'))

    async def _sweep(self, writer: sync.SnapshotWriter) -> int:
        try:
            deleted = await self._write(lambda: writer.collect_garbage(self._store), label='garbage collection')
        except (StoreError, TimeoutError) as e:
            logger.warning(f'[SWEEP] Garbage collection incomplete: {type(e).__name__}: {e}', exc_info=True)
            return 0
        return len(deleted)

    async def _write[T](self, operation: Callable[[], Awaitable[T]], *, label: str) -> T:
        return await call_with_retry(
            operation,
            config=self._pipeline.retry,
            timeout_seconds=self._pipeline.call_timeout_seconds,
            label=label,
        )

    async def _index(
        self,
        sources: Sequence[SourceFile],
        writer: sync.SnapshotWriter,
        emit: Callable[[FileOutcome], None],
        counters: PipelineCounters,
        progress: _Progress,
    ) -> None:
        """Run the stage workers until every queue drains or a worker crashes."""
        config = self._pipeline
        run = _RunState(writer=writer, emit=emit, counters=counters, progress=progress, files_total=len(sources))

        file_queue: asyncio.Queue[SourceFile] = asyncio.Queue()
        embed_queue: asyncio.Queue[_EmbedJob] = asyncio.Queue(maxsize=config.queue_size)
        upsert_queue: asyncio.Queue[_UpsertJob] = asyncio.Queue(maxsize=config.queue_size)
        for source in sources:
            file_queue.put_nowait(source)

        logger.debug(
            f'[PIPELINE] Starting workers: {self._chunking.max_workers} chunk, '
            f'{config.embed_concurrency} embed, {config.upsert_concurrency} upsert for {len(sources)} files'
        )
        worker_tasks = [
            *(
                asyncio.create_task(self._chunk_worker(file_queue, embed_queue, run))
                for _ in range(min(self._chunking.max_workers, len(sources)))
            ),
            *(
                asyncio.create_task(self._embed_worker(embed_queue, upsert_queue, run))
                for _ in range(config.embed_concurrency)
            ),
            *(asyncio.create_task(self._upsert_worker(upsert_queue, run)) for _ in range(config.upsert_concurrency)),
        ]

        async def wait_queues() -> None:
            await file_queue.join()
            await self._flush(embed_queue, run, force=True)
            await embed_queue.join()
            await upsert_queue.join()
            await asyncio.gather(*run.commit_tasks)

        waiter = asyncio.create_task(wait_queues())

        # FAIL-FAST: wait for either the queues to drain OR any worker to crash.
        # A crashed worker never calls task_done(), so the waiter alone would hang.
        try:
            pending: set[asyncio.Task[None]] = {waiter, *worker_tasks}
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    if task is waiter:
                        task.result()
                        pending.clear()
                        break
                    elif not task.cancelled():
                        exc = task.exception()
                        if exc is not None:
                            raise exc
        finally:
            waiter.cancel()
            for task in [*worker_tasks, *run.commit_tasks]:
                task.cancel()
            await asyncio.gather(waiter, *worker_tasks, *run.commit_tasks, return_exceptions=True)
            run.fail_pending(RunCancelled('run aborted'))

    # --- Stage 1: chunk and resolve ---

    async def _chunk_worker(
        self,
        file_queue: asyncio.Queue[SourceFile],
        embed_queue: asyncio.Queue[_EmbedJob],
        run: _RunState,
    ) -> None:
        """Chunk files, resolve each chunk hash, and schedule the file's commit.

        File-level errors (timeout, unreadable, chunker failure) are recorded
        and skipped. Unknown errors propagate (fail-fast).
        """
        while True:
            source = await file_queue.get()

            if self._cancelled.is_set():
                run.emit(FileOutcome(path=source.path, status='cancelled', message='run cancelled before chunking'))
                file_queue.task_done()
                continue

            try:
                chunks = await self._chunking.chunk_file(source)
            except (TimeoutError, OSError, CodeSearchError) as e:
                logger.warning(f'[CHUNK] Skipping {source.path}: {type(e).__name__}: {e}', exc_info=True)
                run.emit(FileOutcome(path=source.path, status='failed', message=f'{type(e).__name__}: {e}'))
                file_queue.task_done()
                continue

            run.counters.chunks_created += len(chunks)
            resolutions: dict[str, asyncio.Future[str] | str] = {}
            owned: set[str] = set()  # Misses this file put up for embedding
            for chunk in chunks:
                if chunk.content_hash in resolutions:
                    continue
                vector_id = run.writer.lookup(chunk.content_hash)
                if vector_id is not None:
                    resolutions[chunk.content_hash] = vector_id
                elif chunk.content_hash in run.pending:
                    resolutions[chunk.content_hash] = run.pending[chunk.content_hash]
                else:
                    resolutions[chunk.content_hash] = run.enqueue(chunk, cancelled=self._cancelled.is_set())
                    owned.add(chunk.content_hash)

            reused = len(resolutions) - len(owned)
            run.counters.chunks_deduplicated += reused
            run.chunked += 1
            run.progress.report('chunk', run.chunked, run.files_total)
            logger.debug(f'[CHUNK] {source.path}: {len(chunks)} chunks, {reused} reused')

            run.commit_tasks.append(asyncio.create_task(self._commit(source, chunks, resolutions, owned, run)))
            await self._flush(embed_queue, run, force=False)
            file_queue.task_done()

    async def _flush(self, embed_queue: asyncio.Queue[_EmbedJob], run: _RunState, *, force: bool) -> None:
        """Move accumulated misses onto the embed queue in provider-sized batches."""
        batch_size = self._embedder.max_batch_size
        while len(run.accumulated) >= batch_size or (force and run.accumulated):
            batch = run.accumulated[:batch_size]
            del run.accumulated[:batch_size]
            if self._cancelled.is_set():
                run.fail(batch, RunCancelled('run cancelled before batch was issued'))
                continue
            await embed_queue.put(_EmbedJob(items=tuple(batch)))

    # --- Stage 2: embed ---

    async def _embed_worker(
        self,
        embed_queue: asyncio.Queue[_EmbedJob],
        upsert_queue: asyncio.Queue[_UpsertJob],
        run: _RunState,
    ) -> None:
        """Embed batches and pass them to the upsert stage.

        Exhausted transient and permanent provider errors fail the batch's
        chunks only.
        """
        while True:
            job = await embed_queue.get()

            if self._cancelled.is_set():
                run.fail(job.items, RunCancelled('run cancelled before batch was issued'))
                embed_queue.task_done()
                continue

            texts = [item.text for item in job.items]
            try:
                vectors = await call_with_retry(
                    lambda: self._embedder.embed(texts, intent='document'),
                    config=self._pipeline.retry,
                    timeout_seconds=self._pipeline.call_timeout_seconds,
                    label=f'embed batch of {len(texts)}',
                )
                if len(vectors) != len(texts):
                    raise ProviderError(f'{len(vectors)} embeddings for {len(texts)} texts', transient=False)
            except (ProviderError, TimeoutError) as e:
                logger.warning(f'[EMBED] Batch of {len(texts)} failed: {type(e).__name__}: {e}')
                run.fail(job.items, e)
                embed_queue.task_done()
                continue

            run.counters.embedding_calls += 1
            run.embedded += len(texts)
            run.progress.report('embed', run.embedded, run.queued)
            logger.debug(f'[EMBED] {len(texts)} chunks embedded')

            await upsert_queue.put(_UpsertJob(items=job.items, vectors=tuple(vectors)))
            embed_queue.task_done()

    # --- Stage 3: upsert ---

    async def _upsert_worker(self, upsert_queue: asyncio.Queue[_UpsertJob], run: _RunState) -> None:
        """Store vectors, then publish their dedup entries.

        A failed upsert fails its chunks; it never triggers re-embedding.
        """
        while True:
            job = await upsert_queue.get()

            records = [
                VectorRecord(
                    vector_id=item.vector_id,
                    vector=list(vector),
                    content_hash=item.content_hash,
                    language=item.language,
                    text=item.text,
                    symbol_names=list(item.symbol_names),
                )
                for item, vector in zip(job.items, job.vectors, strict=True)
            ]
            try:
                await call_with_retry(
                    lambda: self._store.upsert(records),
                    config=self._pipeline.retry,
                    timeout_seconds=self._pipeline.call_timeout_seconds,
                    label=f'upsert {len(records)} vectors',
                )
                await self._write(
                    lambda: run.writer.add_dedup({item.content_hash: item.vector_id for item in job.items}),
                    label='dedup entries',
                )
            except (StoreError, TimeoutError) as e:
                logger.warning(f'[UPSERT] {len(records)} vectors failed: {type(e).__name__}: {e}')
                run.fail(job.items, e)
                upsert_queue.task_done()
                continue

            run.counters.vectors_upserted += len(records)
            run.resolve(job.items)
            logger.debug(f'[UPSERT] {len(records)} vectors stored')
            upsert_queue.task_done()

    # --- Stage 4: commit ---

    async def _commit(
        self,
        source: SourceFile,
        chunks: Sequence[Chunk],
        resolutions: Mapping[str, asyncio.Future[str] | str],
        owned: Set[str],
        run: _RunState,
    ) -> None:
        """Commit a file once all its chunks resolve; otherwise withhold it."""
        hashes = list(resolutions)
        results = await asyncio.gather(
            *(_resolved(resolution) for resolution in resolutions.values()),
            return_exceptions=True,
        )
        failures = [
            ChunkFailure(
                content_hash=chunk_hash,
                error_type=type(result).__name__,
                message=str(result),
                transient=is_transient(result),
            )
            for chunk_hash, result in zip(hashes, results, strict=True)
            if isinstance(result, BaseException)
        ]
        failed_hashes = {f.content_hash for f in failures}
        outcome = FileOutcome(
            path=source.path,
            status='indexed',
            chunks_total=len(chunks),
            chunks_embedded=len(owned - failed_hashes),
            chunks_deduplicated=len(hashes) - len(owned),
            failures=failures,
        )

        if failures:
            if all(f.error_type == RunCancelled.__name__ for f in failures):
                status = 'cancelled'
            elif len(failures) == len(hashes):
                status = 'failed'
            else:
                status = 'partial'
            logger.warning(f'[COMMIT] {source.path}: {status}, {len(failures)}/{len(hashes)} chunks unresolved')
            run.emit(outcome.model_copy(update={'status': status}))
            return

        record = FileRecord(
            path=source.path,
            content_hash=source.content_hash,
            chunks=[
                ChunkEntry(content_hash=c.content_hash, start_line=c.start_line, end_line=c.end_line) for c in chunks
            ],
            indexed_at=datetime.now(UTC),
            language=source.language,
            is_test=chunks[0].is_test if chunks else is_test_path(source.path, self._chunking.config.test_patterns),
            file_size=source.size,
            chunk_strategy_version=CHUNK_STRATEGY_VERSION,
        )
        try:
            await self._write(lambda: run.writer.commit_file(record), label=f'commit {source.path}')
        except (StoreError, TimeoutError) as e:
            logger.warning(f'[COMMIT] {source.path} failed: {type(e).__name__}: {e}')
            run.emit(outcome.model_copy(update={'status': 'failed', 'message': f'{type(e).__name__}: {e}'}))
            return

        self._lexical.replace_file(source.path, [LexicalDocument.from_chunk(c) for c in chunks])
        run.committed += 1
        run.progress.report('commit', run.committed, run.files_total)
        run.emit(outcome)


async def _resolved(resolution: asyncio.Future[str] | str) -> str:
    if isinstance(resolution, str):
        return resolution
    return await asyncio.shield(resolution)


@dataclass
class PipelineCounters:
    """Cumulative counts for one run.

    Safe without locks: all workers are asyncio tasks in a single thread.
    """

    files_scanned: int = 0
    files_unchanged: int = 0
    files_forced: int = 0
    chunks_created: int = 0
    chunks_deduplicated: int = 0  # Resolved via dedup table or shared in-run
    embedding_calls: int = 0
    vectors_upserted: int = 0
    vectors_deleted: int = 0


@attrs.define(frozen=True, kw_only=True)
class _PendingChunk:
    """A chunk hash waiting for its vector."""

    content_hash: str
    vector_id: str
    language: str
    text: str
    symbol_names: tuple[str, ...]


@attrs.define(frozen=True, kw_only=True)
class _EmbedJob:
    items: tuple[_PendingChunk, ...]


@attrs.define(frozen=True, kw_only=True)
class _UpsertJob:
    items: tuple[_PendingChunk, ...]
    vectors: tuple[Sequence[float], ...]


class _Progress:
    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback

    def report(self, phase: IndexingPhase, current: int, total: int) -> None:
        if self._callback is not None:
            self._callback(IndexingProgress(phase=phase, current=current, total=max(total, current)))


@dataclass
class _RunState:
    """Per-run mutable state shared by the stage workers."""

    writer: sync.SnapshotWriter
    emit: Callable[[FileOutcome], None]
    counters: PipelineCounters
    progress: _Progress
    files_total: int
    pending: dict[str, asyncio.Future[str]] = field(default_factory=dict)  # chunk hash -> vector id
    accumulated: list[_PendingChunk] = field(default_factory=list)
    commit_tasks: list[asyncio.Task[None]] = field(default_factory=list)
    chunked: int = 0
    queued: int = 0
    embedded: int = 0
    committed: int = 0

    def enqueue(self, chunk: Chunk, *, cancelled: bool) -> asyncio.Future[str]:
        """Register a dedup miss; the returned future resolves to its vector id."""
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        if cancelled:
            future.set_exception(RunCancelled('run cancelled before batch was issued'))
            return future
        self.pending[chunk.content_hash] = future
        self.queued += 1
        self.accumulated.append(
            _PendingChunk(
                content_hash=chunk.content_hash,
                vector_id=vector_id_for(chunk.content_hash),
                language=chunk.language,
                text=chunk.text,
                symbol_names=tuple(symbol.name for symbol in chunk.symbols),
            )
        )
        return future

    def resolve(self, items: Sequence[_PendingChunk]) -> None:
        for item in items:
            future = self.pending.pop(item.content_hash, None)
            if future is not None and not future.done():
                future.set_result(item.vector_id)

    def fail(self, items: Sequence[_PendingChunk], exc: BaseException) -> None:
        for item in items:
            future = self.pending.pop(item.content_hash, None)
            if future is not None and not future.done():
                future.set_exception(exc)

    def fail_pending(self, exc: BaseException) -> None:
        for future in self.pending.values():
            if not future.done():
                future.set_exception(exc)
                # Nothing awaits these once the run is torn down
                future.exception()
        self.pending.clear()
        self.accumulated.clear()


async def create_indexing_service(config: CodeSearchConfig) -> IndexingService:
    """Factory function to create IndexingService from configuration.

    Must be called from async context - ensures semaphores are bound correctly.
    Qdrant and Redis are used when their URLs are configured; otherwise the
    in-memory vector store and a JSON snapshot under ``state_dir``.
    """
    state_dir = Path(config.state_dir).expanduser()
    embedding_client = create_embedding_client(config.embedding)

    vector_store: VectorStore
    if config.qdrant_url is not None:
        qdrant_store = QdrantVectorStore(QdrantClient(url=config.qdrant_url), config.collection_name)
        await qdrant_store.ensure_collection(config.embedding.embedding_dimensions)
        vector_store = qdrant_store
    else:
        vector_store = MemoryVectorStore()

    snapshot_store: SnapshotStore
    if config.redis_url is not None:
        snapshot_store = RedisSnapshotStore(RedisClient(config.redis_url), config.collection_name)
    else:
        snapshot_store = MemorySnapshotStore(state_dir / f'{config.collection_name}.snapshot.json')

    lexical_path = state_dir / f'{config.collection_name}.lexical.json'
    lexical_index = LexicalIndex.load(lexical_path, symbol_boost=config.retrieval.symbol_boost)

    chunking_service = ChunkingService.create(
        config.chunking,
        max_workers=config.pipeline.chunk_workers,
        use_processes=config.pipeline.use_process_pool,
        timeout_seconds=config.pipeline.file_chunk_timeout_seconds,
    )

    return IndexingService(
        chunking_service=chunking_service,
        embedding_client=embedding_client,
        vector_store=vector_store,
        snapshot_store=snapshot_store,
        lexical_index=lexical_index,
        pipeline=config.pipeline,
        discovery=config.discovery,
        lexical_path=lexical_path,
    )
