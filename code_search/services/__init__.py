"""Domain services for code search."""

from __future__ import annotations

from code_search.services.chunking import ChunkingService
from code_search.services.fusion import reciprocal_rank_fusion
from code_search.services.indexing import IndexingService, PipelineCounters, create_indexing_service
from code_search.services.retrieval import HybridSearchService

__all__ = [
    'ChunkingService',
    'HybridSearchService',
    'IndexingService',
    'PipelineCounters',
    'create_indexing_service',
    'reciprocal_rank_fusion',
]
