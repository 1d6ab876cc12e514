"""Indexing state, diff and outcome schemas.

The IndexSnapshot is the durable record of what has been indexed: one
FileRecord per path plus the dedup table mapping chunk content hashes to
vector ids. Supports incremental indexing via content hash comparison.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Literal

from code_search.schemas.base import JsonDatetime, StrictModel

__all__ = [
    'CHUNK_STRATEGY_VERSION',
    'ChunkEntry',
    'ChunkFailure',
    'FileOutcome',
    'FileRecord',
    'FileStatus',
    'IndexSnapshot',
    'IndexingPhase',
    'IndexingProgress',
    'IndexingResult',
    'ProgressCallback',
    'SourceFile',
    'SyncDiff',
]

# Current chunking strategy version - bump when the chunker output changes
# v1: structural chunker with declaration batching and block chunks
CHUNK_STRATEGY_VERSION = 1


class SourceFile(StrictModel):
    """A file produced by the filesystem walker."""

    path: str  # Relative to the index root, '/' separated
    text: str
    content_hash: str  # SHA256 of the raw bytes
    language: str
    size: int


class ChunkEntry(StrictModel):
    """Per-chunk bookkeeping kept in a FileRecord."""

    content_hash: str
    start_line: int
    end_line: int


class FileRecord(StrictModel):
    """Snapshot entry for one indexed file.

    Replaced wholesale when the file's content hash changes.
    """

    path: str
    content_hash: str
    chunks: Sequence[ChunkEntry]
    indexed_at: JsonDatetime
    language: str
    is_test: bool
    file_size: int
    chunk_strategy_version: int = CHUNK_STRATEGY_VERSION

    @property
    def chunk_hashes(self) -> Sequence[str]:
        return [entry.content_hash for entry in self.chunks]


class IndexSnapshot(StrictModel):
    """Point-in-time view of the durable index state.

    Invariant: every chunk hash in any FileRecord resolves in ``dedup`` to a
    committed vector-store entry. Records violating it are reindexed.
    """

    files: Mapping[str, FileRecord] = {}
    dedup: Mapping[str, str] = {}  # chunk content hash -> vector id

    def unresolved_hashes(self, path: str) -> Sequence[str]:
        """Chunk hashes of a file that have no dedup entry."""
        record = self.files.get(path)
        if record is None:
            return []
        return [h for h in record.chunk_hashes if h not in self.dedup]

    def referenced_hashes(self) -> set[str]:
        return {h for record in self.files.values() for h in record.chunk_hashes}

    def chunks_by_vector(self) -> Mapping[str, Sequence[tuple[FileRecord, ChunkEntry]]]:
        """Reverse index: vector id -> every (record, chunk) that shares it.

        Lists are sorted by path so expansion order is deterministic.
        """
        index: dict[str, list[tuple[FileRecord, ChunkEntry]]] = {}
        for path in sorted(self.files):
            record = self.files[path]
            for entry in record.chunks:
                vector_id = self.dedup.get(entry.content_hash)
                if vector_id is not None:
                    index.setdefault(vector_id, []).append((record, entry))
        return index


class SyncDiff(StrictModel):
    """Classification of the current file set against the snapshot."""

    added: Sequence[str] = ()
    modified: Sequence[str] = ()  # includes forced reindexes
    removed: Sequence[str] = ()
    unchanged: Sequence[str] = ()
    inconsistent: Sequence[str] = ()  # subset of modified: failed snapshot invariant

    @property
    def to_index(self) -> Sequence[str]:
        return [*self.added, *self.modified]

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.removed)


class ChunkFailure(StrictModel):
    """A chunk that could not be embedded or stored."""

    content_hash: str
    error_type: str  # e.g., "ProviderError", "StoreError", "RunCancelled"
    message: str
    transient: bool  # True when retries were exhausted on a transient error


type FileStatus = Literal['indexed', 'partial', 'failed', 'removed', 'cancelled']


class FileOutcome(StrictModel):
    """Per-file result of an indexing run."""

    path: str
    status: FileStatus
    chunks_total: int = 0
    chunks_embedded: int = 0  # Embedded in this run
    chunks_deduplicated: int = 0  # Resolved through the dedup table or shared in-run
    failures: Sequence[ChunkFailure] = ()
    message: str | None = None

    @property
    def committed(self) -> bool:
        return self.status in ('indexed', 'removed')


class IndexingResult(StrictModel):
    """Result of an indexing run."""

    files_scanned: int
    files_indexed: int
    files_unchanged: int
    files_removed: int
    files_failed: int  # failed + partial
    files_cancelled: int
    files_forced: int  # Reindexed because the snapshot was inconsistent

    chunks_created: int
    chunks_deduplicated: int
    embedding_calls: int
    vectors_upserted: int
    vectors_deleted: int

    elapsed_seconds: float
    outcomes: Sequence[FileOutcome]

    @property
    def failures(self) -> Sequence[FileOutcome]:
        return [o for o in self.outcomes if o.status in ('failed', 'partial')]

    @property
    def success_rate(self) -> float:
        attempted = self.files_indexed + self.files_failed
        if attempted == 0:
            return 1.0
        return self.files_indexed / attempted


type IndexingPhase = Literal['scan', 'chunk', 'embed', 'commit', 'complete']


class IndexingProgress(StrictModel):
    """Progress update emitted during a run."""

    phase: IndexingPhase
    current: int
    total: int

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return round(self.current / self.total * 100, 1)


type ProgressCallback = Callable[[IndexingProgress], None]
