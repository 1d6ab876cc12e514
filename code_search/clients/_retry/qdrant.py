"""Qdrant-specific error classification and circuit breaker.

Private module - import from _retry package.
"""

from __future__ import annotations

import circuitbreaker
import qdrant_client.http.exceptions

from code_search.clients._retry.httpx_errors import is_retryable_httpx_error

__all__ = [
    'is_retryable_qdrant_error',
    'qdrant_breaker',
]

# Note: 500 excluded - for Qdrant it usually indicates a bad request, not a transient error
RETRYABLE_STATUS_CODES = frozenset({408, 502, 503, 504})

QDRANT_FAILURE_THRESHOLD = 5
QDRANT_RECOVERY_TIMEOUT = 30


def is_retryable_qdrant_error(exc: BaseException) -> bool:
    """Check if exception is a transient error from Qdrant.

    qdrant-client raises:
    - ResponseHandlingException: wraps httpx transport errors (check exc.source)
    - UnexpectedResponse: HTTP status errors (check exc.status_code)
    """
    if isinstance(exc, qdrant_client.http.exceptions.ResponseHandlingException):
        return is_retryable_httpx_error(exc.source)

    if isinstance(exc, qdrant_client.http.exceptions.UnexpectedResponse):
        return exc.status_code in RETRYABLE_STATUS_CODES

    return False


def _qdrant_circuit_filter(thrown_type: type, thrown_value: BaseException) -> bool:  # noqa: ARG001
    """Only count transient errors toward the circuit breaker."""
    return is_retryable_qdrant_error(thrown_value)


qdrant_breaker = circuitbreaker.CircuitBreaker(
    failure_threshold=QDRANT_FAILURE_THRESHOLD,
    recovery_timeout=QDRANT_RECOVERY_TIMEOUT,
    expected_exception=_qdrant_circuit_filter,
    name='qdrant',
)
