"""Gemini-specific error classification and circuit breaker.

Private module - import from _retry package.
"""

from __future__ import annotations

import circuitbreaker
import google.genai.errors

from code_search.clients._retry.httpx_errors import is_retryable_httpx_error

__all__ = [
    'gemini_breaker',
    'is_retryable_gemini_error',
]

# 429: Rate limit exceeded (RESOURCE_EXHAUSTED)
# 500/502/503/504: Server errors
RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Circuit breaker - opens after consecutive transient failures, hard fails until recovery
GEMINI_FAILURE_THRESHOLD = 10
GEMINI_RECOVERY_TIMEOUT = 60


def is_retryable_gemini_error(exc: BaseException) -> bool:
    """Check if exception is a transient error from Gemini.

    google-genai throws httpx exceptions directly, and APIError (ClientError
    for 429, ServerError for 5xx) for HTTP status failures.
    """
    if is_retryable_httpx_error(exc):
        return True

    return isinstance(exc, google.genai.errors.APIError) and exc.code in RETRYABLE_STATUS_CODES


def _gemini_circuit_filter(thrown_type: type, thrown_value: BaseException) -> bool:  # noqa: ARG001
    """Only count transient errors toward the circuit breaker."""
    return is_retryable_gemini_error(thrown_value)


gemini_breaker = circuitbreaker.CircuitBreaker(
    failure_threshold=GEMINI_FAILURE_THRESHOLD,
    recovery_timeout=GEMINI_RECOVERY_TIMEOUT,
    expected_exception=_gemini_circuit_filter,
    name='gemini',
)
