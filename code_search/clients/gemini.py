"""Low-level Gemini embedding client.

Thin wrapper around google-genai. Handles API calls only - retry policy lives
in the indexing pipeline, which retries on ProviderError.transient.

Uses native async API (client.aio) for true concurrent requests.
Rate limiting via pyrate_limiter to respect API quotas.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Literal

import circuitbreaker
import google.genai.errors
import httpx
import pyrate_limiter
from google import genai
from google.genai.types import EmbedContentConfig, HttpOptions

from code_search.clients import _retry
from code_search.errors import ProviderError
from code_search.schemas.embeddings import TaskIntent
from code_search.tracking import ConcurrencyTracker

__all__ = [
    'GeminiClient',
]

API_KEY_PATH = Path.home() / '.code-search' / 'secrets' / 'gemini_api_key'

type GeminiTaskType = Literal['RETRIEVAL_DOCUMENT', 'RETRIEVAL_QUERY', 'CODE_RETRIEVAL_QUERY']


class GeminiClient:
    """Gemini embedding client with rate limiting and a circuit breaker.

    Rate limited via pyrate_limiter, concurrency controlled via semaphore.
    SDK and transport errors are translated to ProviderError.
    """

    # Max texts per embed_content call (hard API limit)
    MAX_BATCH_SIZE = 100

    # Rate limiting - Tier 1 limits
    DEFAULT_REQUESTS_PER_MINUTE = 3000
    DEFAULT_TOKENS_PER_MINUTE = 1_000_000

    DEFAULT_MAX_CONCURRENT = 50

    # HTTP client configuration - tuned to avoid PoolTimeout
    DEFAULT_TIMEOUT_MS = 30_000
    DEFAULT_MAX_CONNECTIONS = 50
    DEFAULT_KEEPALIVE_EXPIRY = 30

    INTENT_TO_GEMINI_TASK: Mapping[TaskIntent, GeminiTaskType] = {
        'document': 'RETRIEVAL_DOCUMENT',
        'query': 'CODE_RETRIEVAL_QUERY',
    }

    def __init__(
        self,
        model: str,
        output_dimensionality: int,
        *,
        batch_size: int = MAX_BATCH_SIZE,
        requests_per_minute: int = DEFAULT_REQUESTS_PER_MINUTE,
        api_key: str | None = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_connections: int = DEFAULT_MAX_CONNECTIONS,
        keepalive_expiry: float = DEFAULT_KEEPALIVE_EXPIRY,
    ) -> None:
        """Initialize client.

        Args:
            model: Embedding model name (e.g., 'gemini-embedding-001').
            output_dimensionality: Output vector dimensions (e.g., 768).
            batch_size: Texts per call, at most MAX_BATCH_SIZE.
            requests_per_minute: Rate limit (default 3000 for Tier 1).
            api_key: Gemini API key. If None, loads from env or API_KEY_PATH.
            max_concurrent: Max concurrent API requests (semaphore limit).
            timeout_ms: Request timeout in milliseconds.
            max_connections: Max simultaneous HTTP connections.
            keepalive_expiry: Seconds before idle connections close.
        """
        self._model = model
        self._output_dimensionality = output_dimensionality
        self._batch_size = min(batch_size, self.MAX_BATCH_SIZE)

        # RPM limiter weighted by text count
        self._rpm_limiter = pyrate_limiter.Limiter(
            pyrate_limiter.Rate(requests_per_minute, pyrate_limiter.Duration.MINUTE),
        )
        # TPM limiter over 12-second windows (1/5 of the per-minute quota)
        self._tpm_limiter = pyrate_limiter.Limiter(
            pyrate_limiter.Rate(self.DEFAULT_TOKENS_PER_MINUTE // 5, 12 * pyrate_limiter.Duration.SECOND),
        )

        limits = httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_connections,
            keepalive_expiry=keepalive_expiry,
        )
        http_options = HttpOptions(timeout=timeout_ms, async_client_args={'limits': limits})
        self._client = genai.Client(api_key=api_key or _load_api_key(), http_options=http_options)

        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tracker = ConcurrencyTracker('GEMINI')
        self.errors_429 = 0

    @property
    def max_batch_size(self) -> int:
        return self._batch_size

    async def embed(self, texts: Sequence[str], *, intent: TaskIntent) -> Sequence[Sequence[float]]:
        """Embed texts using Gemini API.

        Args:
            texts: Texts to embed (max batch size per call).
            intent: 'document' for indexing, 'query' for search.

        Returns:
            List of embedding vectors.

        Raises:
            ProviderError: transient for 429/5xx/network errors and an open
                circuit, permanent otherwise.
        """
        if len(texts) > self._batch_size:
            raise ProviderError(f'batch of {len(texts)} exceeds max {self._batch_size}', transient=False)

        try:
            return await self._embed(texts, intent)
        except circuitbreaker.CircuitBreakerError as e:
            raise ProviderError(f'Gemini circuit open: {e}', transient=True) from e
        except (google.genai.errors.APIError, httpx.HTTPError) as e:
            if isinstance(e, google.genai.errors.APIError) and e.code == 429:
                self.errors_429 += 1
            raise ProviderError(
                f'Gemini embed failed: {type(e).__name__}: {e}', transient=_retry.is_retryable_gemini_error(e)
            ) from e

    @_retry.gemini_breaker
    async def _embed(self, texts: Sequence[str], intent: TaskIntent) -> Sequence[Sequence[float]]:
        # ~0.513 tokens/char, calibrated against Google's dashboard
        estimated_tokens = int(sum(len(t) for t in texts) / 1.95)

        await self._rpm_limiter.try_acquire_async('rpm', weight=len(texts))
        await self._tpm_limiter.try_acquire_async('tpm', weight=max(estimated_tokens, 1))

        async with self._semaphore, self._tracker.track():
            result = await self._client.aio.models.embed_content(
                model=self._model,
                contents=list(texts),
                config=EmbedContentConfig(
                    task_type=self.INTENT_TO_GEMINI_TASK[intent],
                    output_dimensionality=self._output_dimensionality,
                ),
            )
        embeddings = result.embeddings or []
        if len(embeddings) != len(texts):
            raise ProviderError(f'Gemini returned {len(embeddings)} embeddings for {len(texts)} texts', transient=True)
        return [list(e.values or ()) for e in embeddings]

    async def close(self) -> None:
        """google-genai manages its own HTTP lifecycle; only stop the tracker."""
        self._tracker.stop()


def _load_api_key() -> str:
    """Load API key from GEMINI_API_KEY or the standard secrets file."""
    env_key = os.environ.get('GEMINI_API_KEY')
    if env_key:
        return env_key.strip()
    if not API_KEY_PATH.exists():
        raise FileNotFoundError(f'API key not found at {API_KEY_PATH} and GEMINI_API_KEY is unset')
    return API_KEY_PATH.read_text().strip()
