"""Chunk and symbol schemas.

A Chunk is identified by (file path, content hash of its body). Chunks are
immutable: a content change produces a new chunk, never a mutation.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Annotated, Literal

import pydantic

from code_search.schemas.base import StrictModel

__all__ = [
    'Chunk',
    'ChunkKind',
    'ChunkStrategy',
    'Location',
    'Symbol',
    'SymbolKind',
    'make_chunk_id',
]

type SymbolKind = Literal[
    'function',
    'method',
    'class',
    'struct',
    'enum',
    'namespace',
    'type_alias',
    'union',
    'interface',
    'trait',
    'module',
    'variable',
    'constant',
]

# declaration: a chunkable node or kept declaration
# batch: merged run of small declarations
# block: top-level material not covered by any declaration
# window: fixed-window fallback output
type ChunkKind = Literal['declaration', 'batch', 'block', 'window']

type ChunkStrategy = Literal['structural', 'window']


class Location(StrictModel):
    """1-based line, 0-based byte column."""

    line: int
    column: int


class Symbol(StrictModel):
    """A named definition found in a chunk.

    Usages are lexical matches of the name anywhere in the same file. They are
    not scope or type resolved.
    """

    name: str
    kind: SymbolKind
    definition: Location
    end_line: int
    usages: Sequence[Location] = ()
    documentation: str | None = None


class Chunk(StrictModel):
    """A bounded slice of a source file with its metadata."""

    file_path: str
    content_hash: str  # SHA256 of text
    language: str
    kind: ChunkKind
    text: Annotated[str, pydantic.Field(min_length=1)]

    # Range bookkeeping. May extend above text when an excluded license block
    # was captured.
    start_byte: int
    end_byte: int
    start_line: int  # 1-based, inclusive
    end_line: int  # 1-based, inclusive
    start_column: int
    end_column: int

    is_test: bool
    symbols: Sequence[Symbol] = ()
    documentation: str | None = None

    # Oversize sub-chunks: 0-based part index and total parts
    part: int = 0
    part_count: int = 1

    @property
    def chunk_id(self) -> str:
        return make_chunk_id(self.file_path, self.content_hash)


def make_chunk_id(file_path: str, chunk_hash: str) -> str:
    return f'{file_path}#{chunk_hash}'

