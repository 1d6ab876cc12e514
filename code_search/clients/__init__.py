"""Adapters for external services."""

from __future__ import annotations

from code_search.clients.gemini import GeminiClient
from code_search.clients.hashing import HashingEmbeddingClient
from code_search.clients.protocols import EmbeddingClient, VectorStore
from code_search.clients.qdrant import QdrantClient
from code_search.clients.redis import RedisClient
from code_search.schemas.config import EmbeddingConfig, GeminiConfig, LocalEmbeddingConfig

__all__ = [
    'EmbeddingClient',
    'GeminiClient',
    'HashingEmbeddingClient',
    'QdrantClient',
    'RedisClient',
    'VectorStore',
    'create_embedding_client',
]


def create_embedding_client(config: EmbeddingConfig) -> EmbeddingClient:
    """Create embedding client based on configuration.

    Args:
        config: Embedding configuration (GeminiConfig or LocalEmbeddingConfig).

    Returns:
        Configured embedding client.
    """
    match config:
        case GeminiConfig():
            return GeminiClient(
                model=config.embedding_model,
                output_dimensionality=config.embedding_dimensions,
                batch_size=config.batch_size,
                requests_per_minute=config.requests_per_minute,
            )
        case LocalEmbeddingConfig():
            return HashingEmbeddingClient(config.embedding_dimensions, batch_size=config.batch_size)

    raise TypeError(f'Unknown config type: {type(config).__name__}')
