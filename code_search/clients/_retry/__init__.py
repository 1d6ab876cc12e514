"""Transient-error classification for collaborator SDKs.

Private submodule - not exported by the package. Adapters use these
predicates to translate SDK exceptions into ProviderError / StoreError with
the right ``transient`` flag; the indexing pipeline then retries on that flag.

HTTPX Exception Hierarchy
=========================

Reference for which exceptions are transient::

    httpx.HTTPError (base)
    ├── httpx.RequestError
    │   ├── httpx.TransportError
    │   │   ├── httpx.TimeoutException   ← TRANSIENT (all 4 subclasses)
    │   │   ├── httpx.NetworkError       ← TRANSIENT (all 4 subclasses)
    │   │   ├── httpx.ProtocolError
    │   │   │   ├── LocalProtocolError   ← PERMANENT (our bug)
    │   │   │   └── RemoteProtocolError  ← TRANSIENT (server sent invalid HTTP)
    │   │   ├── ProxyError               ← PERMANENT (config error)
    │   │   └── UnsupportedProtocol      ← PERMANENT (code error)
    │   ├── DecodingError                ← PERMANENT (response malformed)
    │   └── TooManyRedirects             ← PERMANENT (config/server error)
    ├── httpx.HTTPStatusError            ← Handled per-client (SDK wraps these)
    └── httpx.InvalidURL                 ← PERMANENT (code error)

Client-Specific Notes
---------------------
- **Gemini (google-genai)**: Throws httpx exceptions directly. Also transient:
  APIError with status 429/500/502/503/504.
- **Qdrant (qdrant-client)**: Wraps httpx in ResponseHandlingException.
  Check exc.source for the underlying error.
- **Redis (redis-py)**: ConnectionError and TimeoutError are transient.
"""

from __future__ import annotations

from code_search.clients._retry.gemini import gemini_breaker, is_retryable_gemini_error
from code_search.clients._retry.httpx_errors import is_retryable_httpx_error
from code_search.clients._retry.qdrant import is_retryable_qdrant_error, qdrant_breaker
from code_search.clients._retry.redis import is_retryable_redis_error

__all__ = [
    'gemini_breaker',
    'is_retryable_gemini_error',
    'is_retryable_httpx_error',
    'is_retryable_qdrant_error',
    'is_retryable_redis_error',
    'qdrant_breaker',
]
