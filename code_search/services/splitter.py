"""Fixed-window text splitter.

Used for files without a usable grammar and for subdividing oversize chunks.
Wraps langchain's RecursiveCharacterTextSplitter: text splits on newlines
first and falls back to single characters for lines longer than a window, so
splits land on line boundaries where possible. Neighbouring windows share up
to ``overlap`` characters (exactly ``overlap`` when no newline is involved).
"""

from __future__ import annotations

from collections.abc import Sequence

from langchain_text_splitters import RecursiveCharacterTextSplitter

__all__ = [
    'window_spans',
]


def window_spans(text: str, size: int, overlap: int) -> Sequence[tuple[int, int]]:
    """Character spans ``[start, end)`` covering ``text`` in order.

    Every character is in at least one span. Whitespace is kept, so each span
    is an exact slice of ``text``.

    Example: 5200 characters without newlines, size 2500, overlap 300 gives
    (0, 2500), (2200, 4700), (4400, 5200).
    """
    if size <= 0 or not 0 <= overlap < size:
        raise ValueError(f'invalid window: size={size} overlap={overlap}')
    if not text:
        return []

    splitter = RecursiveCharacterTextSplitter(
        chunk_size=size,
        chunk_overlap=overlap,
        separators=['\n', ''],
        keep_separator='end',
        strip_whitespace=False,
        add_start_index=True,
    )
    spans: list[tuple[int, int]] = []
    for document in splitter.create_documents([text]):
        start = document.metadata['start_index']
        spans.append((start, start + len(document.page_content)))
    return spans
