"""Persisted index snapshot.

Durable key-value form of IndexSnapshot: one record per file plus the global
dedup table. Both backends support atomic per-file record replacement and a
dedup-table upsert; callers serialize writes (see SnapshotWriter).

Redis key pattern:
    snap:{collection}:file:{path}  hash of encoded FileRecord fields
    snap:{collection}:dedup        hash of chunk hash -> vector id
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Protocol

import filelock
import pydantic
import redis.exceptions

from code_search.clients import _retry
from code_search.clients.redis import RedisClient
from code_search.errors import StoreError
from code_search.schemas.indexing import ChunkEntry, FileRecord, IndexSnapshot
from code_search.utils import atomic_write_text

__all__ = [
    'MemorySnapshotStore',
    'RedisSnapshotStore',
    'SnapshotStore',
]

logger = logging.getLogger(__name__)


class SnapshotStore(Protocol):
    """Durable IndexSnapshot storage."""

    async def load(self) -> IndexSnapshot:
        """Point-in-time copy of the full snapshot."""
        ...

    async def replace_file_record(self, record: FileRecord) -> None:
        """Atomically replace (or create) one file's record."""
        ...

    async def delete_file_record(self, path: str) -> None:
        ...

    async def put_dedup_entries(self, entries: Mapping[str, str]) -> None:
        """Upsert chunk hash -> vector id entries."""
        ...

    async def delete_dedup_entries(self, chunk_hashes: Sequence[str]) -> None:
        ...


class MemorySnapshotStore:
    """In-process snapshot, optionally persisted to a JSON file.

    Every mutation rewrites the file through a temp file and os.replace, so a
    crash leaves either the old or the new snapshot on disk, never a mix. Reads
    and writes hold a FileLock on a sibling ``.lock`` file, so two processes
    sharing a state directory do not interleave.
    """

    def __init__(self, path: Path | None = None, *, lock_timeout_seconds: float = 10.0) -> None:
        self._path = path
        self._files: dict[str, FileRecord] = {}
        self._dedup: dict[str, str] = {}
        self._lock: filelock.FileLock | None = None
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = filelock.FileLock(path.with_name(f'{path.name}.lock'), timeout=lock_timeout_seconds)
        if path.exists():
            try:
                with self._locked():
                    raw = path.read_bytes()
                snapshot = IndexSnapshot.model_validate_json(raw)
            except pydantic.ValidationError as e:
                raise StoreError(f'Corrupt snapshot file {path}: {e}', transient=False) from e
            self._files = dict(snapshot.files)
            self._dedup = dict(snapshot.dedup)
            logger.info(f'[SNAPSHOT] Loaded {len(self._files)} records, {len(self._dedup)} dedup entries from {path}')

    async def load(self) -> IndexSnapshot:
        return IndexSnapshot(files=dict(self._files), dedup=dict(self._dedup))

    async def replace_file_record(self, record: FileRecord) -> None:
        self._files[record.path] = record
        self._persist()

    async def delete_file_record(self, path: str) -> None:
        if self._files.pop(path, None) is not None:
            self._persist()

    async def put_dedup_entries(self, entries: Mapping[str, str]) -> None:
        if entries:
            self._dedup.update(entries)
            self._persist()

    async def delete_dedup_entries(self, chunk_hashes: Sequence[str]) -> None:
        removed = [h for h in chunk_hashes if self._dedup.pop(h, None) is not None]
        if removed:
            self._persist()

    def _persist(self) -> None:
        if self._path is None:
            return
        snapshot = IndexSnapshot(files=self._files, dedup=self._dedup)
        with self._locked():
            try:
                atomic_write_text(self._path, snapshot.model_dump_json())
            except OSError as e:
                raise StoreError(f'Failed to write snapshot {self._path}: {e}', transient=False) from e

    @contextmanager
    def _locked(self) -> Iterator[None]:
        if self._lock is None:
            yield
            return
        try:
            self._lock.acquire()
        except filelock.Timeout as e:
            raise StoreError(f'Snapshot {self._path} is locked by another process', transient=True) from e
        try:
            yield
        finally:
            self._lock.release()


class RedisSnapshotStore:
    """Snapshot backed by Redis hashes.

    Record replacement is DEL + HSET inside MULTI/EXEC, so a reader never sees
    a half-written record. Redis failures surface as StoreError.
    """

    def __init__(self, redis: RedisClient, collection_name: str) -> None:
        self._redis = redis
        prefix = f'snap:{collection_name}:'
        self._file_prefix = f'{prefix}file:'
        self._dedup_key = f'{prefix}dedup'

    async def load(self) -> IndexSnapshot:
        try:
            keys = [key async for key in self._redis.scan_iter(match=f'{self._file_prefix}*')]
            pipe = self._redis.pipeline()
            for key in keys:
                pipe.hgetall(key)
            raw_records = await pipe.execute() if keys else []
            raw_dedup = await self._redis.hgetall(self._dedup_key)
        except redis.exceptions.RedisError as e:
            raise _store_error('load snapshot', e) from e

        files: dict[str, FileRecord] = {}
        for key, raw in zip(keys, raw_records, strict=True):
            if raw:
                path = key[len(self._file_prefix) :]
                files[path] = _decode_record(path, raw)
        dedup = {k.decode(): v.decode() for k, v in raw_dedup.items()}
        return IndexSnapshot(files=files, dedup=dedup)

    async def replace_file_record(self, record: FileRecord) -> None:
        key = self._key(record.path)
        pipe = self._redis.pipeline(transaction=True)
        pipe.delete(key)
        pipe.hset(key, mapping=_encode_record(record))
        try:
            await pipe.execute()
        except redis.exceptions.RedisError as e:
            raise _store_error(f'replace record {record.path}', e) from e

    async def delete_file_record(self, path: str) -> None:
        try:
            await self._redis.delete(self._key(path))
        except redis.exceptions.RedisError as e:
            raise _store_error(f'delete record {path}', e) from e

    async def put_dedup_entries(self, entries: Mapping[str, str]) -> None:
        if not entries:
            return
        try:
            await self._redis.hset(self._dedup_key, entries)
        except redis.exceptions.RedisError as e:
            raise _store_error('update dedup table', e) from e

    async def delete_dedup_entries(self, chunk_hashes: Sequence[str]) -> None:
        try:
            await self._redis.hdel(self._dedup_key, chunk_hashes)
        except redis.exceptions.RedisError as e:
            raise _store_error('prune dedup table', e) from e

    def _key(self, path: str) -> str:
        return f'{self._file_prefix}{path}'


def _store_error(action: str, exc: redis.exceptions.RedisError) -> StoreError:
    return StoreError(
        f'Redis {action} failed: {type(exc).__name__}: {exc}',
        transient=_retry.is_retryable_redis_error(exc),
    )


# --- Encode/decode helpers ---


def _encode_record(record: FileRecord) -> Mapping[str, str]:
    """Encode FileRecord to Redis hash fields (all string values)."""
    return {
        'content_hash': record.content_hash,
        'chunks': json.dumps([[c.content_hash, c.start_line, c.end_line] for c in record.chunks]),
        'indexed_at': record.indexed_at.isoformat(),
        'language': record.language,
        'is_test': '1' if record.is_test else '0',
        'file_size': str(record.file_size),
        'chunk_strategy_version': str(record.chunk_strategy_version),
    }


def _decode_record(path: str, raw: Mapping[bytes, bytes]) -> FileRecord:
    """Decode Redis hash bytes to FileRecord."""
    return FileRecord(
        path=path,
        content_hash=raw[b'content_hash'].decode(),
        chunks=[
            ChunkEntry(content_hash=h, start_line=start, end_line=end)
            for h, start, end in json.loads(raw[b'chunks'])
        ],
        indexed_at=datetime.fromisoformat(raw[b'indexed_at'].decode()),
        language=raw[b'language'].decode(),
        is_test=raw[b'is_test'] == b'1',
        file_size=int(raw[b'file_size']),
        chunk_strategy_version=int(raw[b'chunk_strategy_version']),
    )
