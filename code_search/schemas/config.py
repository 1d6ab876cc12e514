"""Configuration schema.

One JSON file holds every recognized option. Each section is a frozen model
with defaults, so an empty file (or no file) yields a working configuration.
Validation errors surface as ConfigError before any indexing work starts.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Annotated, Literal, Self

import pydantic
from pydantic import Field, TypeAdapter

from code_search.errors import ConfigError
from code_search.schemas.base import StrictModel

__all__ = [
    'CONFIG_PATH',
    'ChunkingConfig',
    'CodeSearchConfig',
    'DiscoveryConfig',
    'EmbeddingConfig',
    'EmbeddingProvider',
    'GeminiConfig',
    'LocalEmbeddingConfig',
    'PipelineConfig',
    'RetrievalConfig',
    'RetryConfig',
    'TestPatterns',
    'load_config',
    'parse_config',
    'save_config',
]

logger = logging.getLogger(__name__)

CODE_SEARCH_DIR = Path.home() / '.code-search'
CONFIG_PATH = CODE_SEARCH_DIR / 'config.json'

type EmbeddingProvider = Literal['gemini', 'local']

PositiveInt = Annotated[int, Field(gt=0)]
NonNegativeInt = Annotated[int, Field(ge=0)]
PositiveFloat = Annotated[float, Field(gt=0)]
NonNegativeFloat = Annotated[float, Field(ge=0)]


class TestPatterns(StrictModel):
    """Heuristics for classifying a path as test code. Matching is case-insensitive."""

    __test__ = False  # not a pytest class

    extensions: Sequence[str] = ('.t',)
    directories: Sequence[str] = ('test', 'tests', 'unittest', 'unittests', 'gtest', 'googletest', '__tests__')
    filename_globs: Sequence[str] = ('*_test.*', '*.test.*', 'test_*.*', '*_unittest.*')


class ChunkingConfig(StrictModel):
    """Structural chunker options."""

    chunk_size_chars: PositiveInt = 2500
    chunk_overlap_chars: NonNegativeInt = 300
    min_declaration_lines: PositiveInt = 6
    declaration_batch_threshold_lines: PositiveInt = 20
    max_comment_lookback_lines: NonNegativeInt = 30
    test_patterns: TestPatterns = TestPatterns()

    @pydantic.model_validator(mode='after')
    def _check_ranges(self) -> Self:
        if self.chunk_overlap_chars >= self.chunk_size_chars:
            raise ValueError(
                f'chunk_overlap_chars ({self.chunk_overlap_chars}) must be smaller than '
                f'chunk_size_chars ({self.chunk_size_chars})'
            )
        if self.min_declaration_lines > self.declaration_batch_threshold_lines:
            raise ValueError(
                f'min_declaration_lines ({self.min_declaration_lines}) must not exceed '
                f'declaration_batch_threshold_lines ({self.declaration_batch_threshold_lines})'
            )
        return self


class DiscoveryConfig(StrictModel):
    """Filesystem walker options. Patterns are globs relative to the index root."""

    include_patterns: Sequence[str] = ('**/*',)
    exclude_patterns: Sequence[str] = (
        '**/.git/**',
        '**/node_modules/**',
        '**/__pycache__/**',
        '**/.venv/**',
        '**/build/**',
        '**/dist/**',
    )
    use_git: bool = True  # Use `git ls-files` when inside a work tree
    max_file_bytes: PositiveInt = 1_000_000

    @pydantic.model_validator(mode='after')
    def _check_conflicts(self) -> Self:
        conflicting = sorted(set(self.include_patterns) & set(self.exclude_patterns))
        if conflicting:
            raise ValueError(f'patterns both included and excluded: {conflicting}')
        return self


class RetryConfig(StrictModel):
    """Exponential backoff with jitter for transient collaborator errors."""

    max_attempts: PositiveInt = 5
    initial_backoff_seconds: NonNegativeFloat = 0.5
    max_backoff_seconds: PositiveFloat = 20.0
    jitter_seconds: NonNegativeFloat = 1.0

    @pydantic.model_validator(mode='after')
    def _check_backoff(self) -> Self:
        if self.initial_backoff_seconds > self.max_backoff_seconds:
            raise ValueError('initial_backoff_seconds must not exceed max_backoff_seconds')
        return self


class PipelineConfig(StrictModel):
    """Indexing pipeline concurrency and resilience."""

    chunk_workers: PositiveInt | None = None  # None: os.cpu_count()
    use_process_pool: bool = True
    embed_concurrency: PositiveInt = 8
    upsert_concurrency: PositiveInt = 4
    queue_size: PositiveInt = 64
    call_timeout_seconds: PositiveFloat = 30.0
    file_chunk_timeout_seconds: PositiveFloat = 60.0
    verify_vectors: bool = True
    retry: RetryConfig = RetryConfig()


class RetrievalConfig(StrictModel):
    """Hybrid retrieval and Reciprocal Rank Fusion options."""

    rrf_k: NonNegativeInt = 60
    lexical_weight: NonNegativeFloat = 1.0
    vector_weight: NonNegativeFloat = 1.0
    symbol_boost: PositiveFloat = 2.0
    candidate_multiplier: PositiveInt = 3
    query_timeout_seconds: PositiveFloat = 10.0


class GeminiConfig(StrictModel):
    """Gemini embedding provider."""

    provider: Literal['gemini'] = 'gemini'
    embedding_model: str = 'gemini-embedding-001'
    embedding_dimensions: PositiveInt = 768
    batch_size: Annotated[int, Field(gt=0, le=100)] = 100  # Max per Gemini API call
    requests_per_minute: PositiveInt = 3000


class LocalEmbeddingConfig(StrictModel):
    """Offline feature-hashing embedder. No network, deterministic."""

    provider: Literal['local'] = 'local'
    embedding_dimensions: PositiveInt = 256
    batch_size: PositiveInt = 64


type EmbeddingConfig = GeminiConfig | LocalEmbeddingConfig


class CodeSearchConfig(StrictModel):
    """Root configuration."""

    collection_name: Annotated[str, Field(min_length=1, pattern=r'^[A-Za-z0-9_\-]+$')] = 'code'
    chunking: ChunkingConfig = ChunkingConfig()
    discovery: DiscoveryConfig = DiscoveryConfig()
    pipeline: PipelineConfig = PipelineConfig()
    retrieval: RetrievalConfig = RetrievalConfig()
    embedding: Annotated[GeminiConfig | LocalEmbeddingConfig, Field(discriminator='provider')] = (
        LocalEmbeddingConfig()
    )
    qdrant_url: str | None = None  # None: in-memory vector store
    redis_url: str | None = None  # None: JSON snapshot file
    state_dir: str = str(CODE_SEARCH_DIR / 'state')


_config_adapter: TypeAdapter[CodeSearchConfig] = TypeAdapter(CodeSearchConfig)


def parse_config(raw: str | bytes) -> CodeSearchConfig:
    """Validate a JSON document into a config.

    Raises:
        ConfigError: On malformed JSON, out-of-range values or conflicting options.
    """
    try:
        return _config_adapter.validate_json(raw)
    except pydantic.ValidationError as e:
        raise ConfigError(f'Invalid configuration: {e}') from e


def load_config(path: Path = CONFIG_PATH) -> CodeSearchConfig:
    """Load config from file, or defaults when the file does not exist.

    Raises:
        ConfigError: If the file exists but is invalid.
    """
    if not path.exists():
        logger.info(f'No config at {path}, using defaults')
        return CodeSearchConfig()

    try:
        return parse_config(path.read_bytes())
    except ConfigError as e:
        raise ConfigError(f'Invalid config file at {path}: {e}') from e


def save_config(config: CodeSearchConfig, path: Path = CONFIG_PATH) -> None:
    """Save config to file, creating parent directories if needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config.model_dump(mode='json'), indent=2) + '\n')
    logger.info(f'Saved config to {path}: provider={config.embedding.provider}')
