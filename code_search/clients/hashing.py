"""Offline feature-hashing embedder.

Deterministic bag-of-tokens vectors: each identifier-like token (and each
camelCase / snake_case part) is hashed into one of ``dimensions`` buckets
with a signed weight, and the result is L2-normalized. No network and no
model download, so indexing works without credentials.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Sequence

import numpy as np

from code_search.schemas.embeddings import TaskIntent
from code_search.tracking import ConcurrencyTracker

__all__ = [
    'HashingEmbeddingClient',
    'tokenize',
]

_TOKEN = re.compile(r'[A-Za-z_][A-Za-z0-9_]*|\d+')
_CAMEL_PART = re.compile(r'[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+')


def tokenize(text: str) -> Sequence[str]:
    """Lower-cased tokens plus their camelCase / snake_case parts."""
    tokens: list[str] = []
    for match in _TOKEN.finditer(text):
        token = match.group()
        tokens.append(token.lower())
        parts = [p.lower() for piece in token.split('_') for p in _CAMEL_PART.findall(piece)]
        if len(parts) > 1:
            tokens.extend(parts)
    return tokens


class HashingEmbeddingClient:
    """Embedding client backed by the hashing trick."""

    def __init__(self, dimensions: int = 256, *, batch_size: int = 64) -> None:
        self._dimensions = dimensions
        self._batch_size = batch_size
        self._tracker = ConcurrencyTracker('HASHING')

    @property
    def max_batch_size(self) -> int:
        return self._batch_size

    @property
    def calls(self) -> int:
        return self._tracker.total_calls

    async def embed(self, texts: Sequence[str], *, intent: TaskIntent) -> Sequence[Sequence[float]]:  # noqa: ARG002
        async with self._tracker.track():
            return [self._vector(text).tolist() for text in texts]

    def _vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dimensions, dtype=np.float32)
        for token in tokenize(text):
            digest = hashlib.blake2b(token.encode('utf-8'), digest_size=8).digest()
            bucket = int.from_bytes(digest[:4], 'little') % self._dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign
        norm = float(np.linalg.norm(vector))
        if norm > 0:
            vector /= norm
        return vector

    async def close(self) -> None:
        self._tracker.stop()
