"""Tests for the structural chunker."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from code_search.schemas.config import ChunkingConfig
from code_search.schemas.indexing import SourceFile
from code_search.services.chunking import TRIVIAL_LINES, ChunkingService, chunk, select_strategy
from code_search.utils import content_hash

CPP_DECLARATIONS = """\
int alpha;
int beta;
int gamma;

int compute(int x) {
    int total = 0;
    for (int i = 0; i < x; ++i) {
        total += i;
    }
    if (total > 100) {
        total = 100;
    }
    return total;
}
"""

CPP_LICENSED = """\
// SPDX-License-Identifier: MIT
// Copyright 2024 Example Corp

#include <vector>

int add(int a, int b) {
    return a + b;
}
"""

PYTHON_MODULE = """\
import os

# Adds two numbers.
def add(a, b):
    return a + b


class Greeter:
    \"\"\"Says hello.\"\"\"

    def greet(self, name):
        return 'hi ' + name


def helper():
    return 1


value = helper()
print(os.sep, value)
"""

SCALA_OBJECT = """\
object Checksum {
  def compute(data: Array[Byte]): Int = data.sum
}
"""

PERL_PACKAGE = """\
package Greeter;

sub greet {
    my ($name) = @_;
    return "hi $name";
}
"""


@pytest.fixture
def config() -> ChunkingConfig:
    return ChunkingConfig()


class TestStrategySelection:
    @pytest.mark.parametrize(
        'language',
        ['cpp', 'C++', 'python', 'py', 'javascript', 'typescript', 'go', 'rust', 'scala', 'perl', 'pl'],
    )
    def test_grammar_languages_are_structural(self, language: str) -> None:
        assert select_strategy(language) == 'structural'

    def test_scala_symbols(self, config: ChunkingConfig) -> None:
        [only] = chunk(SCALA_OBJECT, 'scala', 'src/Checksum.scala', config)

        assert only.kind == 'declaration'
        assert [(s.name, s.kind) for s in only.symbols] == [('Checksum', 'class'), ('compute', 'method')]

    def test_perl_symbols(self, config: ChunkingConfig) -> None:
        chunks = chunk(PERL_PACKAGE, 'perl', 'lib/Greeter.pm', config)
        symbols = {s.name: s.kind for c in chunks for s in c.symbols}

        assert symbols == {'Greeter': 'namespace', 'greet': 'function'}
        assert chunks[-1].text.startswith('sub greet {')

    @pytest.mark.parametrize('language', ['markdown', 'yaml', 'shell', 'unknown'])
    def test_other_languages_use_window(self, language: str) -> None:
        assert select_strategy(language) == 'window'


class TestDeclarations:
    def test_short_declarations_batch_and_function_stands_alone(self, config: ChunkingConfig) -> None:
        chunks = chunk(CPP_DECLARATIONS, 'cpp', 'src/compute.cpp', config)

        assert [c.kind for c in chunks] == ['batch', 'declaration']
        assert chunks[0].text == 'int alpha;\nint beta;\nint gamma;'
        assert (chunks[0].start_line, chunks[0].end_line) == (1, 3)
        assert chunks[1].text.startswith('int compute(int x) {')
        assert (chunks[1].start_line, chunks[1].end_line) == (5, 14)

    def test_batch_carries_variable_symbols(self, config: ChunkingConfig) -> None:
        batch, function = chunk(CPP_DECLARATIONS, 'cpp', 'src/compute.cpp', config)

        assert [(s.name, s.kind) for s in batch.symbols] == [
            ('alpha', 'variable'),
            ('beta', 'variable'),
            ('gamma', 'variable'),
        ]
        assert [(s.name, s.kind) for s in function.symbols] == [('compute', 'function')]

    def test_initialized_declaration_is_kept(self, config: ChunkingConfig) -> None:
        source = 'int limit = 10;\n\nint twice(int v) {\n    return v * 2;\n}\n'
        chunks = chunk(source, 'cpp', 'limits.cpp', config)

        assert [c.kind for c in chunks] == ['declaration', 'declaration']
        assert chunks[0].text == 'int limit = 10;'

    def test_batch_flushes_at_threshold(self) -> None:
        config = ChunkingConfig(min_declaration_lines=2, declaration_batch_threshold_lines=2)
        source = ''.join(f'int v{i};\n' for i in range(5))
        chunks = chunk(source, 'cpp', 'vars.cpp', config)

        assert [c.kind for c in chunks] == ['batch', 'batch', 'batch']
        assert [c.text for c in chunks] == ['int v0;\nint v1;', 'int v2;\nint v3;', 'int v4;']

    def test_statements_between_declarations_close_the_batch(self, config: ChunkingConfig) -> None:
        calls = ''.join('console.log(i);\n' for _ in range(30))
        source = f'let a;\n{calls}let b;\n'
        chunks = chunk(source, 'javascript', 'src/log.js', config)

        assert [(c.kind, c.start_line, c.end_line) for c in chunks] == [
            ('batch', 1, 1),
            ('block', 2, 31),
            ('batch', 32, 32),
        ]
        assert chunks[1].text == calls.rstrip('\n')

    def test_comments_between_declarations_keep_the_batch(self, config: ChunkingConfig) -> None:
        source = 'int alpha;\n// retries before giving up\nint beta;\n'
        chunks = chunk(source, 'cpp', 'limits.cpp', config)

        assert [(c.kind, c.start_line, c.end_line) for c in chunks] == [('batch', 1, 3)]


class TestComments:
    def test_leading_comment_becomes_documentation(self, config: ChunkingConfig) -> None:
        chunks = chunk(PYTHON_MODULE, 'python', 'pkg/mod.py', config)
        add = next(c for c in chunks if any(s.name == 'add' for s in c.symbols))

        assert add.text.startswith('# Adds two numbers.\ndef add(a, b):')
        assert add.documentation == 'Adds two numbers.'
        assert add.symbols[0].documentation == 'Adds two numbers.'

    def test_license_header_excluded_from_content(self, config: ChunkingConfig) -> None:
        chunks = chunk(CPP_LICENSED, 'cpp', 'add.cpp', config)

        assert all('SPDX' not in c.text and 'Copyright' not in c.text for c in chunks)
        header = chunks[0]
        assert header.kind == 'block'
        assert header.text == '#include <vector>'
        assert header.start_line == 1  # range still starts at the license
        assert chunks[1].text.startswith('int add(int a, int b) {')


class TestSymbols:
    def test_methods_and_classes(self, config: ChunkingConfig) -> None:
        chunks = chunk(PYTHON_MODULE, 'python', 'pkg/mod.py', config)
        symbols = {s.name: s for c in chunks for s in c.symbols}

        assert symbols['Greeter'].kind == 'class'
        assert symbols['greet'].kind == 'method'
        assert symbols['helper'].kind == 'function'

    def test_usages_are_lexical_matches(self, config: ChunkingConfig) -> None:
        chunks = chunk(PYTHON_MODULE, 'python', 'pkg/mod.py', config)
        helper = next(s for c in chunks for s in c.symbols if s.name == 'helper')

        assert helper.definition.line == 15
        assert [(u.line, u.column) for u in helper.usages] == [(19, 8)]


class TestChunkProperties:
    def test_deterministic(self, config: ChunkingConfig) -> None:
        first = chunk(PYTHON_MODULE, 'python', 'pkg/mod.py', config)
        second = chunk(PYTHON_MODULE, 'python', 'pkg/mod.py', config)

        assert first == second
        assert [c.content_hash for c in first] == [content_hash(c.text) for c in first]

    @pytest.mark.parametrize(
        ('source', 'language'),
        [(PYTHON_MODULE, 'python'), (CPP_DECLARATIONS, 'cpp')],
    )
    def test_every_nontrivial_line_is_covered(self, config: ChunkingConfig, source: str, language: str) -> None:
        chunks = chunk(source, language, f'file.{language}', config)
        covered = {line for c in chunks for line in range(c.start_line, c.end_line + 1)}

        for number, line in enumerate(source.split('\n'), start=1):
            if line.strip() not in TRIVIAL_LINES:
                assert number in covered, f'line {number} not in any chunk: {line!r}'

    def test_chunks_are_in_source_order(self, config: ChunkingConfig) -> None:
        chunks = chunk(PYTHON_MODULE, 'python', 'pkg/mod.py', config)
        starts = [c.start_line for c in chunks]

        assert starts == sorted(starts)

    def test_oversize_declaration_is_split(self) -> None:
        config = ChunkingConfig(chunk_size_chars=200, chunk_overlap_chars=20)
        body = ''.join(f'    total += {i}\n' for i in range(40))
        source = f'def accumulate():\n    total = 0\n{body}    return total\n'
        chunks = chunk(source, 'python', 'big.py', config)

        assert len(chunks) > 1
        assert all(len(c.text) <= 200 for c in chunks)
        assert chunks[0].symbols[0].name == 'accumulate'
        assert all(not c.symbols for c in chunks[1:])

    def test_oversize_decorated_function_keeps_its_symbol(self) -> None:
        config = ChunkingConfig(chunk_size_chars=200, chunk_overlap_chars=20)
        body = ''.join(f'    total += {i}\n' for i in range(40))
        source = f'@cache\ndef accumulate():\n    total = 0\n{body}    return total\n'
        chunks = chunk(source, 'python', 'big.py', config)

        assert len(chunks) > 1
        assert all(c.kind == 'declaration' for c in chunks)
        assert chunks[0].text.startswith('@cache\ndef accumulate():')
        assert [s.name for s in chunks[0].symbols] == ['accumulate']
        assert all(not c.symbols for c in chunks[1:])

    def test_oversize_decorated_class_opens_into_methods(self) -> None:
        config = ChunkingConfig(chunk_size_chars=200, chunk_overlap_chars=20)
        methods = ''.join(f'    def step_{i}(self):\n        return {i}\n\n' for i in range(8))
        source = f'@dataclass\nclass Pipeline:\n{methods}'
        chunks = chunk(source, 'python', 'pipeline.py', config)
        by_symbol = {s.name: c for c in chunks for s in c.symbols}

        assert by_symbol['Pipeline'].text == '@dataclass\nclass Pipeline:'
        assert by_symbol['step_3'].text.strip() == 'def step_3(self):\n        return 3'
        assert by_symbol['step_3'].symbols[0].kind == 'method'

    def test_crlf_source_matches_lf(self, config: ChunkingConfig) -> None:
        crlf = chunk(PYTHON_MODULE.replace('\n', '\r\n'), 'python', 'pkg/mod.py', config)

        assert crlf == chunk(PYTHON_MODULE, 'python', 'pkg/mod.py', config)
        assert all('\r' not in c.text for c in crlf)

    def test_test_classification_is_recorded(self, config: ChunkingConfig) -> None:
        chunks = chunk(PYTHON_MODULE, 'python', 'tests/test_mod.py', config)

        assert chunks and all(c.is_test for c in chunks)


class TestChunkingService:
    async def test_chunk_file_runs_on_executor(self, config: ChunkingConfig) -> None:
        source = SourceFile(
            path='src/compute.cpp',
            text=CPP_DECLARATIONS,
            content_hash=content_hash(CPP_DECLARATIONS),
            language='cpp',
            size=len(CPP_DECLARATIONS),
        )
        async with ChunkingService(config, _executor=ThreadPoolExecutor(max_workers=1)) as service:
            chunks = await service.chunk_file(source)

        assert chunks == chunk(CPP_DECLARATIONS, 'cpp', 'src/compute.cpp', config)
