"""Shared httpx error classification.

Private module - import from _retry package.
"""

from __future__ import annotations

import httpx

__all__ = [
    'is_retryable_httpx_error',
]


def is_retryable_httpx_error(exc: BaseException | None) -> bool:
    """Check if exception is a transient httpx transport error.

    Transient:
    - httpx.TimeoutException (Connect/Read/Write/PoolTimeout)
    - httpx.NetworkError (Connect/Read/Write/CloseError)
    - httpx.RemoteProtocolError (server sent invalid HTTP)

    Everything else (LocalProtocolError, ProxyError, UnsupportedProtocol) is a
    bug or config error and is not worth retrying.
    """
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True

    return isinstance(exc, httpx.RemoteProtocolError)
