"""Test-code classification by path heuristics."""

from __future__ import annotations

import fnmatch
from pathlib import PurePosixPath

from code_search.schemas.config import TestPatterns

__all__ = [
    'is_test_path',
    'matched_test_heuristics',
]


def matched_test_heuristics(path: str, patterns: TestPatterns) -> frozenset[str]:
    """Which heuristics classify ``path`` as test code: 'extension', 'directory', 'filename'.

    Case-insensitive; backslashes are treated as separators.
    """
    pure = PurePosixPath(path.replace('\\', '/').lower())
    reasons = set()

    name = pure.name
    if any(name.endswith(ext.lower()) for ext in patterns.extensions):
        reasons.add('extension')

    test_dirs = {d.lower() for d in patterns.directories}
    if any(part in test_dirs for part in pure.parent.parts):
        reasons.add('directory')

    if any(fnmatch.fnmatchcase(name, glob.lower()) for glob in patterns.filename_globs):
        reasons.add('filename')

    return frozenset(reasons)


def is_test_path(path: str, patterns: TestPatterns) -> bool:
    return bool(matched_test_heuristics(path, patterns))
