"""Small shared helpers."""

from __future__ import annotations

import hashlib
import os
import tempfile
import time
import uuid
from pathlib import Path

__all__ = [
    'Timer',
    'atomic_write_text',
    'content_hash',
    'vector_id_for',
]


class Timer:
    """Simple stopwatch-style timer for measuring elapsed time."""

    def __init__(self) -> None:
        self._start = time.perf_counter()

    def elapsed(self) -> float:
        """Return elapsed time in seconds."""
        return time.perf_counter() - self._start

    def elapsed_ms(self) -> int:
        """Return elapsed time in milliseconds."""
        return int(self.elapsed() * 1000)


def content_hash(text: str) -> str:
    """SHA256 hex digest of UTF-8 text."""
    return hashlib.sha256(text.encode('utf-8')).hexdigest()


def vector_id_for(chunk_hash: str) -> str:
    """Deterministic vector-store id for a chunk content hash.

    Identical chunk bodies in different files map to the same id, so they
    share one stored vector.
    """
    return str(uuid.UUID(bytes=hashlib.sha256(f'vector|{chunk_hash}'.encode()).digest()[:16]))


def atomic_write_text(path: Path, text: str) -> None:
    """Write text via a sibling temp file and os.replace.

    Readers see either the old or the new content, never a partial write.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f'.{path.name}.', suffix='.tmp')
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
