"""Redis error classification.

Private module - import from _retry package.
"""

from __future__ import annotations

import redis.exceptions

__all__ = [
    'is_retryable_redis_error',
]


def is_retryable_redis_error(exc: BaseException) -> bool:
    """Connection drops and socket timeouts are transient; everything else is not."""
    return isinstance(exc, (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError))
