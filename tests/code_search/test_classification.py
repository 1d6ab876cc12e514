"""Tests for test-code path classification."""

from __future__ import annotations

import pytest

from code_search.schemas.config import TestPatterns
from code_search.services.classification import is_test_path, matched_test_heuristics

PATTERNS = TestPatterns()


class TestMatchedHeuristics:
    def test_directory_and_filename(self) -> None:
        assert matched_test_heuristics('src/foo/tests/bar_test.cpp', PATTERNS) == {'directory', 'filename'}

    @pytest.mark.parametrize(
        ('path', 'expected'),
        [
            ('lib/Parser.t', {'extension'}),
            ('unittest/parser.cpp', {'directory'}),
            ('src/__tests__/button.tsx', {'directory'}),
            ('src/test_parser.py', {'filename'}),
            ('src/parser.test.ts', {'filename'}),
            ('src/parser_unittest.cc', {'filename'}),
            ('src/parser.cpp', set()),
            ('src/latest/contest.py', set()),
        ],
    )
    def test_each_heuristic(self, path: str, expected: set[str]) -> None:
        assert matched_test_heuristics(path, PATTERNS) == expected

    def test_case_insensitive(self) -> None:
        assert matched_test_heuristics('Src/Tests/Bar_Test.CPP', PATTERNS) == {'directory', 'filename'}

    def test_backslash_separators(self) -> None:
        assert 'directory' in matched_test_heuristics('src\\tests\\bar.cpp', PATTERNS)

    def test_custom_patterns(self) -> None:
        patterns = TestPatterns(extensions=[], directories=['spec'], filename_globs=['*_spec.*'])

        assert matched_test_heuristics('spec/models/user_spec.rb', patterns) == {'directory', 'filename'}
        assert not is_test_path('tests/test_models.py', patterns)


class TestIsTestPath:
    @pytest.mark.parametrize('path', ['tests/test_a.py', 'a_test.go', 'gtest/main.cc'])
    def test_true(self, path: str) -> None:
        assert is_test_path(path, PATTERNS)

    @pytest.mark.parametrize('path', ['src/main.cc', 'testing_utils.py', 'attest/report.py'])
    def test_false(self, path: str) -> None:
        assert not is_test_path(path, PATTERNS)
