"""Leading comment capture and license filtering."""

from __future__ import annotations

import dataclasses
import re
from collections.abc import Sequence

__all__ = [
    'COPYRIGHT_BLOCK_MAX_LINES',
    'CommentBlock',
    'capture_leading_comment',
    'clean_comment',
    'is_license_block',
]

LICENSE_MARKERS = (
    'spdx-license-identifier',
    'licensed under',
    'permission is hereby granted',
    'gnu general public license',
    'gnu lesser general public license',
    'mozilla public license',
)

# A copyright notice longer than this is boilerplate, not documentation
COPYRIGHT_BLOCK_MAX_LINES = 20

_MARKER_PREFIX = re.compile(r'^(?:/\*\*?|\*/|//[/!]?|#+|\*)\s?')
_TRAILING_CLOSE = re.compile(r'\s*\*/$')


@dataclasses.dataclass(frozen=True)
class CommentBlock:
    """Comment lines found directly above a declaration.

    ``start`` is the 0-based index of the topmost comment line; ``end`` is the
    exclusive end (the declaration's first line).
    """

    start: int
    end: int
    lines: Sequence[str]
    is_license: bool

    @property
    def documentation(self) -> str | None:
        if self.is_license:
            return None
        return clean_comment(self.lines)


def capture_leading_comment(
    lines: Sequence[str],
    start: int,
    *,
    floor: int,
    max_lookback: int,
    prefixes: tuple[str, ...],
) -> CommentBlock | None:
    """Scan upward from ``start`` for a comment block.

    Comment lines and single blank lines are included. Scanning stops at a
    code line, a run of two blank lines, ``floor`` (the previous chunk's end)
    or ``max_lookback`` lines.
    """
    limit = max(floor, start - max_lookback, 0)
    top: int | None = None
    blank_run = 0
    i = start - 1
    while i >= limit:
        stripped = lines[i].strip()
        if not stripped:
            blank_run += 1
            if blank_run > 1:
                break
            i -= 1
            continue
        blank_run = 0
        if '/*' in prefixes and stripped.endswith('*/') and '/*' not in stripped:
            # Closing line of a block comment whose body lines lack a marker
            opening = _find_block_open(lines, i, limit)
            if opening is None:
                break
            top = opening
            i = opening - 1
            continue
        if stripped.startswith(prefixes):
            top = i
            i -= 1
            continue
        break

    if top is None:
        return None
    block_lines = lines[top:start]
    return CommentBlock(start=top, end=start, lines=block_lines, is_license=is_license_block(block_lines))


def _find_block_open(lines: Sequence[str], close: int, limit: int) -> int | None:
    for j in range(close, limit - 1, -1):
        if '/*' in lines[j]:
            return j
    return None


def is_license_block(lines: Sequence[str]) -> bool:
    """True for license headers and long copyright notices."""
    text = '\n'.join(lines).lower()
    if any(marker in text for marker in LICENSE_MARKERS):
        return True
    comment_lines = sum(1 for line in lines if line.strip())
    return 'copyright' in text and comment_lines > COPYRIGHT_BLOCK_MAX_LINES


def clean_comment(lines: Sequence[str]) -> str | None:
    """Strip comment markers, keeping the text lines."""
    cleaned = []
    for line in lines:
        stripped = _TRAILING_CLOSE.sub('', line.strip())
        stripped = _MARKER_PREFIX.sub('', stripped).strip()
        if stripped:
            cleaned.append(stripped)
    return '\n'.join(cleaned) or None
