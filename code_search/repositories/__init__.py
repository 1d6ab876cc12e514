"""Repositories for index state and retrieval data."""

from __future__ import annotations

from code_search.repositories.lexical_index import LexicalDocument, LexicalIndex
from code_search.repositories.snapshot import MemorySnapshotStore, RedisSnapshotStore, SnapshotStore
from code_search.repositories.vector_store import MemoryVectorStore, QdrantVectorStore

__all__ = [
    'LexicalDocument',
    'LexicalIndex',
    'MemorySnapshotStore',
    'MemoryVectorStore',
    'QdrantVectorStore',
    'RedisSnapshotStore',
    'SnapshotStore',
]
