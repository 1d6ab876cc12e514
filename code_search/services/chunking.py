"""Chunking service - splits source files into embeddable code units.

Two strategies, resolved once per file:
- structural: tree-sitter parse, declarations become chunks, small bare
  declarations are batched, uncovered top-level lines become block chunks
- window: fixed-size overlapping windows over the raw text

``chunk()`` is a pure function so it can run in a ProcessPoolExecutor.
ChunkingService wraps it for the async pipeline, keeping CPU-bound parsing
off the event loop and off the network worker pool.
"""

from __future__ import annotations

import asyncio
import bisect
import dataclasses
import logging
import os
from collections.abc import Sequence
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor

from tree_sitter import Node, Tree

from code_search.schemas.chunking import Chunk, ChunkKind, ChunkStrategy
from code_search.schemas.config import ChunkingConfig
from code_search.schemas.indexing import SourceFile
from code_search.services.classification import is_test_path
from code_search.services.comments import capture_leading_comment, is_license_block
from code_search.services.languages import LANGUAGES, LanguageSpec, get_parser, resolve_language, unwrap
from code_search.services.splitter import window_spans
from code_search.services.symbols import Definition, FileScan, scan_tree
from code_search.utils import content_hash

__all__ = [
    'ChunkingService',
    'chunk',
    'select_strategy',
]

logger = logging.getLogger(__name__)

# Lines that carry no content on their own when left between declarations
TRIVIAL_LINES = frozenset({'', '{', '}', '};', '},', ')', ');', '})', '});', ']', '];'})

# Descend at most this deep when looking for an initializer token
_INITIALIZER_DEPTH = 2
_INITIALIZER_TOKENS = frozenset({'=', 'init_declarator', 'initializer_list'})
_PARAMETER_LISTS = frozenset({'parameter_list', 'parameters', 'formal_parameters'})


def select_strategy(language_id: str) -> ChunkStrategy:
    """Structural when a grammar for the language loads, window otherwise."""
    language = resolve_language(language_id)
    if language in LANGUAGES and get_parser(language) is not None:
        return 'structural'
    return 'window'


def chunk(source_text: str, language_id: str, file_path: str, config: ChunkingConfig) -> Sequence[Chunk]:
    """Split a source file into ordered chunks.

    Deterministic: identical inputs give identical boundaries and hashes. CRLF and
    lone CR line endings are normalized to LF first, so chunk text, hashes and byte
    offsets refer to the normalized text and do not depend on the checkout.

    Args:
        source_text: File content.
        language_id: Language id or alias ('cpp', 'C++', 'py', ...).
        file_path: Path recorded on each chunk and used for test classification.
        config: Size, overlap, declaration and comment options.

    Returns:
        Chunks in source order. Empty for blank files.
    """
    source_text = source_text.replace('\r\n', '\n').replace('\r', '\n')
    if not source_text.strip():
        return []

    language = resolve_language(language_id)
    builder = _ChunkBuilder(
        source_text=source_text,
        language=language,
        file_path=file_path,
        config=config,
        is_test=is_test_path(file_path, config.test_patterns),
    )

    tree = _parse(language, builder.source_bytes) if select_strategy(language) == 'structural' else None
    if tree is None:
        return builder.window_chunks()
    return builder.structural_chunks(LANGUAGES[language], tree)


def _parse(language: str, source_bytes: bytes) -> Tree | None:
    parser = get_parser(language)
    if parser is None:
        return None
    tree = parser.parse(source_bytes)
    if tree.root_node.type == 'ERROR':
        logger.debug(f'[CHUNK] {language} parse produced no structure, using window splitter')
        return None
    return tree


@dataclasses.dataclass
class _Unit:
    """A syntax node selected as (part of) a chunk."""

    node: Node
    start: int  # 0-based line
    end: int  # 0-based line, inclusive
    batched: bool


@dataclasses.dataclass
class _Piece:
    """A chunk before oversize splitting, in line coordinates."""

    kind: ChunkKind
    start: int  # range start, includes captured comments
    content_start: int  # first line of text (after an excluded license block)
    end: int
    documentation: str | None = None
    definitions: list[Definition] = dataclasses.field(default_factory=list)


class _ChunkBuilder:
    def __init__(
        self,
        *,
        source_text: str,
        language: str,
        file_path: str,
        config: ChunkingConfig,
        is_test: bool,
    ) -> None:
        self.source_text = source_text
        self.source_bytes = source_text.encode('utf-8')
        self.language = language
        self.file_path = file_path
        self.config = config
        self.is_test = is_test
        self.lines = source_text.split('\n')
        self._line_bytes = [len(line.encode('utf-8')) for line in self.lines]
        self._line_offsets = [0]
        for size in self._line_bytes[:-1]:
            self._line_offsets.append(self._line_offsets[-1] + size + 1)

    # --- Window strategy ---

    def window_chunks(self) -> Sequence[Chunk]:
        chunks: list[Chunk] = []
        spans = window_spans(self.source_text, self.config.chunk_size_chars, self.config.chunk_overlap_chars)
        for part, (start, end) in enumerate(spans):
            text = self.source_text[start:end]
            if not text.strip():
                continue
            chunks.append(
                self._span_chunk(text, 'window', base_line=0, text_offset=start, part=part, part_count=len(spans))
            )
        return chunks

    # --- Structural strategy ---

    def structural_chunks(self, spec: LanguageSpec, tree: Tree) -> Sequence[Chunk]:
        units = self._collect_units(spec, tree.root_node)
        pieces = self._group_units(spec, units)
        pieces = self._fill_gaps(spec, pieces)

        scan = scan_tree(spec, tree.root_node)
        self._assign_definitions(pieces, scan)

        chunks: list[Chunk] = []
        for piece in pieces:
            chunks.extend(self._emit(spec, piece, scan))
        return chunks

    def _collect_units(self, spec: LanguageSpec, root: Node) -> list[_Unit]:
        """Outermost chunkable and declaration nodes, in source order."""
        units: list[_Unit] = []
        stack = list(reversed(root.children))
        while stack:
            node = stack.pop()
            if not node.is_named:
                continue
            if node.type in spec.chunkable_kinds:
                if self._should_open(spec, node):
                    stack.extend(reversed(node.children))
                    continue
                units.append(self._unit(node, batched=False))
            elif node.type in spec.declaration_kinds:
                units.append(self._unit(node, batched=not self._keep_declaration(spec, node)))
            else:
                stack.extend(reversed(node.children))
        return units

    def _unit(self, node: Node, *, batched: bool) -> _Unit:
        end = node.end_point[0]
        # A node ending at column 0 stops before that line's content
        if node.end_point[1] == 0 and end > node.start_point[0]:
            end -= 1
        return _Unit(node=node, start=node.start_point[0], end=end, batched=batched)

    def _should_open(self, spec: LanguageSpec, node: Node) -> bool:
        """Oversize containers are split into their members instead of windowed.

        A wrapper (decorator, export, template) only opens when the node it wraps is
        itself a container, so a decorated function stays whole with its decorators.
        """
        if node.type not in spec.container_kinds:
            return False
        if node.type in spec.wrapper_fields and unwrap(spec, node).type not in spec.container_kinds:
            return False
        if node.end_byte - node.start_byte <= self.config.chunk_size_chars:
            return False
        stack = list(node.children)
        while stack:
            current = stack.pop()
            if current.type in spec.chunkable_kinds or current.type in spec.declaration_kinds:
                return True
            stack.extend(current.children)
        return False

    def _keep_declaration(self, spec: LanguageSpec, node: Node) -> bool:
        line_span = node.end_point[0] - node.start_point[0] + 1
        if line_span >= self.config.min_declaration_lines:
            return True
        text = self.source_bytes[node.start_byte : node.end_byte].decode('utf-8', errors='replace')
        if spec.named_form.match(text):
            return True
        return _has_initializer(node)

    def _group_units(self, spec: LanguageSpec, units: Sequence[_Unit]) -> list[_Piece]:
        """Merge consecutive batched declarations and capture leading comments.

        A batch only spans declarations that are adjacent apart from blank, comment
        and brace lines; any other statement between them closes the batch.
        """
        pieces: list[_Piece] = []
        batch: list[_Unit] = []
        batch_span = 0

        def flush() -> None:
            nonlocal batch, batch_span
            if batch:
                pieces.append(self._piece(spec, 'batch', batch[0].start, batch[-1].end, pieces))
            batch = []
            batch_span = 0

        for unit in units:
            if not unit.batched:
                flush()
                pieces.append(self._piece(spec, 'declaration', unit.start, unit.end, pieces))
                continue
            if batch and self._has_content_between(spec, batch[-1].end, unit.start):
                flush()
            batch.append(unit)
            batch_span += unit.end - unit.start + 1
            if batch_span >= self.config.declaration_batch_threshold_lines:
                flush()
        flush()
        return pieces

    def _has_content_between(self, spec: LanguageSpec, after: int, before: int) -> bool:
        for line in self.lines[after + 1 : before]:
            stripped = line.strip()
            if stripped not in TRIVIAL_LINES and not spec.is_comment_line(stripped):
                return True
        return False

    def _piece(self, spec: LanguageSpec, kind: ChunkKind, start: int, end: int, previous: Sequence[_Piece]) -> _Piece:
        floor = previous[-1].end + 1 if previous else 0
        block = capture_leading_comment(
            self.lines,
            start,
            floor=floor,
            max_lookback=self.config.max_comment_lookback_lines,
            prefixes=spec.comment_prefixes,
        )
        if block is None:
            return _Piece(kind=kind, start=start, content_start=start, end=end)
        content_start = start if block.is_license else block.start
        return _Piece(
            kind=kind,
            start=block.start,
            content_start=content_start,
            end=end,
            documentation=block.documentation,
        )

    def _fill_gaps(self, spec: LanguageSpec, pieces: list[_Piece]) -> list[_Piece]:
        """Emit uncovered, non-trivial line runs as block pieces."""
        covered = [False] * len(self.lines)
        for piece in pieces:
            for line in range(piece.start, piece.end + 1):
                covered[line] = True

        blocks: list[_Piece] = []
        line = 0
        while line < len(self.lines):
            if covered[line]:
                line += 1
                continue
            run_start = line
            while line < len(self.lines) and not covered[line]:
                line += 1
            block = self._block_piece(spec, run_start, line - 1)
            if block is not None:
                blocks.append(block)

        return sorted([*pieces, *blocks], key=lambda p: (p.start, p.end))

    def _block_piece(self, spec: LanguageSpec, start: int, end: int) -> _Piece | None:
        if all(self.lines[i].strip() in TRIVIAL_LINES for i in range(start, end + 1)):
            return None
        while not self.lines[start].strip():
            start += 1
        while not self.lines[end].strip():
            end -= 1

        # A license header at the top of a block stays in range but not in content
        content_start = start
        header_end = start
        while header_end <= end and spec.is_comment_line(self.lines[header_end].strip()):
            header_end += 1
        if header_end > start and is_license_block(self.lines[start:header_end]):
            content_start = header_end
            while content_start <= end and not self.lines[content_start].strip():
                content_start += 1
            if content_start > end:
                return _Piece(kind='block', start=start, content_start=end + 1, end=end)
        return _Piece(kind='block', start=start, content_start=content_start, end=end)

    def _assign_definitions(self, pieces: Sequence[_Piece], scan: FileScan) -> None:
        """Attach each definition to the first piece whose range holds its first line."""
        starts = [piece.start for piece in pieces]
        for definition in scan.definitions:
            index = bisect.bisect_right(starts, definition.line) - 1
            while index >= 0:
                piece = pieces[index]
                if piece.start <= definition.line <= piece.end:
                    piece.definitions.append(definition)
                    break
                index -= 1

    def _emit(self, spec: LanguageSpec, piece: _Piece, scan: FileScan) -> Sequence[Chunk]:
        if piece.content_start > piece.end:
            return []  # license-only block
        text = '\n'.join(self.lines[piece.content_start : piece.end + 1])
        if not text.strip():
            return []

        symbols = [scan.to_symbol(d, self._doc_for(spec, d, piece)) for d in piece.definitions]

        if len(text) <= self.config.chunk_size_chars:
            last = piece.end
            return [
                Chunk(
                    file_path=self.file_path,
                    content_hash=content_hash(text),
                    language=self.language,
                    kind=piece.kind,
                    text=text,
                    start_byte=self._line_offsets[piece.start],
                    end_byte=self._line_offsets[last] + self._line_bytes[last],
                    start_line=piece.start + 1,
                    end_line=last + 1,
                    start_column=0,
                    end_column=self._line_bytes[last],
                    is_test=self.is_test,
                    symbols=symbols,
                    documentation=piece.documentation,
                )
            ]

        spans = window_spans(text, self.config.chunk_size_chars, self.config.chunk_overlap_chars)
        chunks: list[Chunk] = []
        for part, (start, end) in enumerate(spans):
            sub_text = text[start:end]
            if not sub_text.strip():
                continue
            sub = self._span_chunk(
                sub_text,
                piece.kind,
                base_line=piece.content_start,
                text_offset=start,
                source=text,
                part=part,
                part_count=len(spans),
            )
            if part == 0:
                sub = sub.model_copy(update={'symbols': symbols, 'documentation': piece.documentation})
            chunks.append(sub)
        return chunks

    def _doc_for(self, spec: LanguageSpec, definition: Definition, piece: _Piece) -> str | None:
        block = capture_leading_comment(
            self.lines,
            definition.line,
            floor=piece.content_start,
            max_lookback=self.config.max_comment_lookback_lines,
            prefixes=spec.comment_prefixes,
        )
        return block.documentation if block is not None else None

    def _span_chunk(
        self,
        text: str,
        kind: ChunkKind,
        *,
        base_line: int,
        text_offset: int,
        part: int,
        part_count: int,
        source: str | None = None,
    ) -> Chunk:
        """Chunk for ``text`` found at ``text_offset`` in ``source`` (which starts at ``base_line``)."""
        source = self.source_text if source is None else source
        end_offset = text_offset + len(text)

        start_line = base_line + source.count('\n', 0, text_offset)
        end_line = base_line + source.count('\n', 0, max(end_offset - 1, text_offset))
        start_column = len(source[source.rfind('\n', 0, text_offset) + 1 : text_offset].encode('utf-8'))
        end_line_begin = source.rfind('\n', 0, end_offset - 1) + 1 if end_offset > 0 else 0
        end_column = len(source[end_line_begin:end_offset].encode('utf-8'))
        start_byte = self._line_offsets[start_line] + start_column

        return Chunk(
            file_path=self.file_path,
            content_hash=content_hash(text),
            language=self.language,
            kind=kind,
            text=text,
            start_byte=start_byte,
            end_byte=start_byte + len(text.encode('utf-8')),
            start_line=start_line + 1,
            end_line=end_line + 1,
            start_column=start_column,
            end_column=end_column,
            is_test=self.is_test,
            part=part,
            part_count=part_count,
        )


def _has_initializer(node: Node) -> bool:
    """True when a declaration assigns a value (``int x = 1;``, ``var x = 2``)."""
    stack: list[tuple[Node, int]] = [(node, 0)]
    while stack:
        current, depth = stack.pop()
        for child in current.children:
            if child.type in _INITIALIZER_TOKENS:
                return True
            if depth < _INITIALIZER_DEPTH and child.type not in _PARAMETER_LISTS:
                stack.append((child, depth + 1))
    return False


class ChunkingService:
    """Runs the chunker on a dedicated CPU executor.

    The executor is separate from the embedding/upsert workers so a saturated
    network path never starves parsing, and vice versa.
    """

    @classmethod
    def create(
        cls,
        config: ChunkingConfig,
        *,
        max_workers: int | None = None,
        use_processes: bool = True,
        timeout_seconds: float = 60.0,
    ) -> ChunkingService:
        """Create a service with its own executor.

        Args:
            config: Chunker options.
            max_workers: Executor size. Defaults to cpu_count.
            use_processes: ProcessPoolExecutor (default) or ThreadPoolExecutor.
            timeout_seconds: Per-file chunking timeout.
        """
        if max_workers is None:
            max_workers = os.cpu_count() or 4
        executor: Executor
        if use_processes:
            executor = ProcessPoolExecutor(max_workers=max_workers)
        else:
            executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='chunk')
        return cls(config, _executor=executor, timeout_seconds=timeout_seconds, max_workers=max_workers)

    def __init__(
        self,
        config: ChunkingConfig,
        *,
        _executor: Executor,
        timeout_seconds: float = 60.0,
        max_workers: int = 1,
    ) -> None:
        self._config = config
        self._executor = _executor
        self._timeout_seconds = timeout_seconds
        self.max_workers = max_workers

    @property
    def config(self) -> ChunkingConfig:
        return self._config

    async def chunk_file(self, source: SourceFile) -> Sequence[Chunk]:
        """Chunk one file on the CPU executor.

        Raises:
            TimeoutError: If chunking exceeds the per-file timeout.
        """
        loop = asyncio.get_running_loop()
        async with asyncio.timeout(self._timeout_seconds):
            return await loop.run_in_executor(
                self._executor, chunk, source.text, source.language, source.path, self._config
            )

    def shutdown(self) -> None:
        """Shut down the executor. Called automatically when used as a context manager."""
        self._executor.shutdown(wait=True, cancel_futures=True)

    async def __aenter__(self) -> ChunkingService:
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: object) -> None:
        self.shutdown()
