"""Tests for configuration parsing and validation."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from code_search.errors import ConfigError
from code_search.schemas.config import (
    ChunkingConfig,
    CodeSearchConfig,
    GeminiConfig,
    LocalEmbeddingConfig,
    load_config,
    parse_config,
    save_config,
)


class TestParseConfig:
    def test_empty_document_gives_defaults(self) -> None:
        config = parse_config('{}')

        assert config == CodeSearchConfig()
        assert config.chunking.chunk_size_chars == 2500
        assert config.chunking.chunk_overlap_chars == 300
        assert config.retrieval.rrf_k == 60
        assert isinstance(config.embedding, LocalEmbeddingConfig)

    def test_nested_sections(self) -> None:
        config = parse_config(
            json.dumps({
                'chunking': {'chunk_size_chars': 1200, 'chunk_overlap_chars': 100},
                'retrieval': {'rrf_k': 30, 'vector_weight': 2.0},
                'embedding': {'provider': 'gemini', 'embedding_dimensions': 1536},
            })
        )

        assert config.chunking.chunk_size_chars == 1200
        assert config.retrieval.vector_weight == 2.0
        assert isinstance(config.embedding, GeminiConfig)
        assert config.embedding.embedding_dimensions == 1536

    @pytest.mark.parametrize(
        'document',
        [
            pytest.param('{"chunking": {"chunk_size_chars": 0}}', id='zero-size'),
            pytest.param('{"chunking": {"chunk_size_chars": 300, "chunk_overlap_chars": 300}}', id='overlap-ge-size'),
            pytest.param('{"chunking": {"min_declaration_lines": 30}}', id='min-above-batch-threshold'),
            pytest.param('{"pipeline": {"embed_concurrency": 0}}', id='zero-concurrency'),
            pytest.param(
                '{"pipeline": {"retry": {"initial_backoff_seconds": 30, "max_backoff_seconds": 1}}}',
                id='backoff-inverted',
            ),
            pytest.param('{"retrieval": {"lexical_weight": -1}}', id='negative-weight'),
            pytest.param(
                '{"discovery": {"include_patterns": ["**/*.py"], "exclude_patterns": ["**/*.py"]}}',
                id='conflicting-patterns',
            ),
            pytest.param('{"chunking": {"chunk_size": 100}}', id='unknown-option'),
            pytest.param('{"embedding": {"provider": "openai"}}', id='unknown-provider'),
            pytest.param('{"collection_name": "has space"}', id='bad-collection-name'),
            pytest.param('{not json', id='malformed'),
        ],
    )
    def test_invalid_documents_raise_config_error(self, document: str) -> None:
        with pytest.raises(ConfigError):
            parse_config(document)

    def test_config_error_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            parse_config('{"chunking": {"chunk_size_chars": -5}}')

    def test_models_reject_invalid_ranges_directly(self) -> None:
        with pytest.raises(ValueError):
            ChunkingConfig(chunk_size_chars=100, chunk_overlap_chars=200)


class TestLoadSaveConfig:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        assert load_config(tmp_path / 'absent.json') == CodeSearchConfig()

    def test_save_then_load(self, tmp_path: Path) -> None:
        path = tmp_path / 'nested' / 'config.json'
        config = CodeSearchConfig(collection_name='widgets', chunking=ChunkingConfig(chunk_size_chars=900))

        save_config(config, path)

        loaded = load_config(path)
        assert loaded.collection_name == 'widgets'
        assert loaded.chunking.chunk_size_chars == 900
        assert loaded.model_dump(mode='json') == config.model_dump(mode='json')

    def test_invalid_file_names_path(self, tmp_path: Path) -> None:
        path = tmp_path / 'config.json'
        path.write_text('{"retrieval": {"candidate_multiplier": 0}}')

        with pytest.raises(ConfigError, match='config.json'):
            load_config(path)
