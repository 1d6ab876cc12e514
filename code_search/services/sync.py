"""Change detection and the single snapshot writer.

diff() classifies the walked file set against the persisted snapshot;
verify_vectors() optionally checks that unchanged files still point at stored
vectors. SnapshotWriter is the only component that mutates the snapshot
during a run, keeping an in-memory working view that dedup lookups read.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence, Set

import more_itertools

from code_search.clients.protocols import VectorStore
from code_search.errors import SnapshotInconsistency
from code_search.repositories.snapshot import SnapshotStore
from code_search.schemas.indexing import CHUNK_STRATEGY_VERSION, FileRecord, IndexSnapshot, SyncDiff

__all__ = [
    'SnapshotWriter',
    'diff',
    'verify_vectors',
]

logger = logging.getLogger(__name__)

# Ids per VectorStore.existing() call
VERIFY_BATCH_SIZE = 256


def diff(
    current: Mapping[str, str],
    snapshot: IndexSnapshot,
    *,
    force: Set[str] = frozenset(),
    chunk_strategy_version: int = CHUNK_STRATEGY_VERSION,
) -> SyncDiff:
    """Classify files by comparing content hashes with the snapshot.

    Args:
        current: Path -> content hash for every file in the tree.
        snapshot: The persisted state.
        force: Paths to reindex even when their hash matches.
        chunk_strategy_version: Records written by another version are stale.

    Files whose record fails the snapshot invariant (unresolved chunk hashes,
    stale strategy version, or forced) are listed in ``inconsistent`` and
    reindexed as modified.
    """
    added: list[str] = []
    modified: list[str] = []
    unchanged: list[str] = []
    inconsistent: list[str] = []

    for path in sorted(current):
        record = snapshot.files.get(path)
        if record is None:
            added.append(path)
        elif record.content_hash != current[path]:
            modified.append(path)
        elif (
            record.chunk_strategy_version != chunk_strategy_version
            or path in force
            or snapshot.unresolved_hashes(path)
        ):
            modified.append(path)
            inconsistent.append(path)
        else:
            unchanged.append(path)

    removed = sorted(set(snapshot.files) - set(current))
    return SyncDiff(added=added, modified=modified, removed=removed, unchanged=unchanged, inconsistent=inconsistent)


async def verify_vectors(
    sync_diff: SyncDiff,
    snapshot: IndexSnapshot,
    store: VectorStore,
) -> tuple[SyncDiff, frozenset[str]]:
    """Force-reindex unchanged files whose vectors are missing from the store.

    Returns:
        The adjusted diff and the chunk hashes whose dedup entries dangle.

    Raises:
        StoreError: If the store cannot answer; callers decide whether to skip.
    """
    hashes_by_vector: dict[str, str] = {}
    for path in sync_diff.unchanged:
        for chunk_hash in snapshot.files[path].chunk_hashes:
            hashes_by_vector[snapshot.dedup[chunk_hash]] = chunk_hash
    if not hashes_by_vector:
        return sync_diff, frozenset()

    present: set[str] = set()
    for batch in more_itertools.chunked(sorted(hashes_by_vector), VERIFY_BATCH_SIZE):
        present |= await store.existing(batch)

    dangling = frozenset(h for vector_id, h in hashes_by_vector.items() if vector_id not in present)
    if not dangling:
        return sync_diff, dangling

    forced: list[str] = []
    for path in sync_diff.unchanged:
        missing = sum(1 for h in snapshot.files[path].chunk_hashes if h in dangling)
        if missing:
            logger.warning(f'[SNAPSHOT] {SnapshotInconsistency(path, missing)}; reindexing')
            forced.append(path)

    forced_set = set(forced)
    adjusted = SyncDiff(
        added=sync_diff.added,
        modified=sorted([*sync_diff.modified, *forced]),
        removed=sync_diff.removed,
        unchanged=[p for p in sync_diff.unchanged if p not in forced_set],
        inconsistent=sorted([*sync_diff.inconsistent, *forced]),
    )
    return adjusted, dangling


class SnapshotWriter:
    """Serializes every snapshot mutation of an indexing run.

    Writes go to the store first and update the working view only on
    success, so the view never claims more than is durable.
    """

    def __init__(self, store: SnapshotStore) -> None:
        self._store = store
        self._lock = asyncio.Lock()
        self._files: dict[str, FileRecord] = {}
        self._dedup: dict[str, str] = {}

    async def load(self) -> IndexSnapshot:
        async with self._lock:
            snapshot = await self._store.load()
            self._files = dict(snapshot.files)
            self._dedup = dict(snapshot.dedup)
        return snapshot

    def snapshot(self) -> IndexSnapshot:
        """Point-in-time copy of the working view."""
        return IndexSnapshot(files=dict(self._files), dedup=dict(self._dedup))

    def lookup(self, chunk_hash: str) -> str | None:
        """Vector id for a chunk hash, if it has been committed."""
        return self._dedup.get(chunk_hash)

    async def add_dedup(self, entries: Mapping[str, str]) -> None:
        if not entries:
            return
        async with self._lock:
            await self._store.put_dedup_entries(entries)
            self._dedup.update(entries)

    async def drop_dedup(self, chunk_hashes: Iterable[str]) -> None:
        hashes = sorted(set(chunk_hashes))
        if not hashes:
            return
        async with self._lock:
            await self._store.delete_dedup_entries(hashes)
            for chunk_hash in hashes:
                self._dedup.pop(chunk_hash, None)

    async def commit_file(self, record: FileRecord) -> None:
        """Replace a file's record. Every chunk hash must already resolve."""
        unresolved = [h for h in record.chunk_hashes if h not in self._dedup]
        if unresolved:
            raise SnapshotInconsistency(record.path, len(unresolved))
        async with self._lock:
            await self._store.replace_file_record(record)
            self._files[record.path] = record
        logger.debug(f'[COMMIT] {record.path}: {len(record.chunks)} chunks')

    async def remove_file(self, path: str) -> FileRecord | None:
        async with self._lock:
            await self._store.delete_file_record(path)
            return self._files.pop(path, None)

    def unreferenced(self) -> Mapping[str, str]:
        """Dedup entries no file record refers to."""
        referenced = {h for record in self._files.values() for h in record.chunk_hashes}
        return {h: vector_id for h, vector_id in self._dedup.items() if h not in referenced}

    async def collect_garbage(self, store: VectorStore) -> Sequence[str]:
        """Drop unreferenced dedup entries, then their vectors.

        Dedup entries go first: a crash in between leaves orphan vectors that
        nothing resolves to, never a dedup entry pointing at a deleted vector.

        Returns:
            Deleted vector ids.
        """
        garbage = self.unreferenced()
        if not garbage:
            return []
        await self.drop_dedup(garbage.keys())
        vector_ids = sorted(set(garbage.values()))
        await store.delete(vector_ids)
        logger.info(f'[SWEEP] Deleted {len(vector_ids)} unreferenced vectors')
        return vector_ids
