"""Error taxonomy for indexing and retrieval.

Adapters translate SDK exceptions into these types so the pipeline can make
retry decisions without importing any SDK. ``transient`` errors are retried
with backoff; permanent ones fail the affected chunks only.
"""

from __future__ import annotations

__all__ = [
    'CodeSearchError',
    'ConfigError',
    'ParseFailure',
    'ProviderError',
    'RunCancelled',
    'SnapshotInconsistency',
    'StoreError',
    'is_transient',
]


class CodeSearchError(Exception):
    """Base class for all code_search errors."""


class ConfigError(CodeSearchError, ValueError):
    """Invalid configuration. Raised before any indexing work starts."""


class ParseFailure(CodeSearchError):
    """Grammar unavailable or parse error. Recovered by the window splitter."""

    def __init__(self, language: str, message: str) -> None:
        super().__init__(f'{language}: {message}')
        self.language = language


class ProviderError(CodeSearchError):
    """Embedding provider failure."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class StoreError(CodeSearchError):
    """Vector store or snapshot store failure."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class SnapshotInconsistency(CodeSearchError):
    """A file's record references vectors the store or dedup table does not have."""

    def __init__(self, path: str, missing: int) -> None:
        super().__init__(f'{path}: {missing} chunk hash(es) do not resolve to stored vectors')
        self.path = path
        self.missing = missing


class RunCancelled(CodeSearchError):
    """Set on pending chunks when an indexing run is cancelled."""


def is_transient(exc: BaseException) -> bool:
    """Retry predicate: transient provider/store errors and call timeouts."""
    if isinstance(exc, (ProviderError, StoreError)):
        return exc.transient
    return isinstance(exc, TimeoutError)
