"""Lexical retrieval index.

BM25 (bm25s, Lucene variant) over chunk text. A query term's contribution is
multiplied by the symbol boost in chunks that define a symbol containing that
term. Entries are keyed by chunk id and carry the chunk metadata the retrieval
engine needs for filtering and display. Ranking is deterministic: ties are
broken by chunk id.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Iterable, Sequence
from pathlib import Path

import bm25s
import numpy as np
import pydantic
from bm25s.tokenization import Tokenized

from code_search.clients.hashing import tokenize
from code_search.errors import StoreError
from code_search.schemas.base import StrictModel
from code_search.schemas.chunking import Chunk
from code_search.schemas.vectors import LexicalHit, SearchFilters
from code_search.utils import atomic_write_text

__all__ = [
    'LexicalDocument',
    'LexicalIndex',
]

logger = logging.getLogger(__name__)

BM25_K1 = 1.2
BM25_B = 0.75


class LexicalDocument(StrictModel):
    """One indexed chunk."""

    chunk_id: str
    path: str
    language: str
    is_test: bool
    start_line: int
    end_line: int
    text: str
    symbol_names: Sequence[str] = ()

    @classmethod
    def from_chunk(cls, chunk: Chunk) -> LexicalDocument:
        return cls(
            chunk_id=chunk.chunk_id,
            path=chunk.file_path,
            language=chunk.language,
            is_test=chunk.is_test,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            text=chunk.text,
            symbol_names=[symbol.name for symbol in chunk.symbols],
        )


_documents_adapter = pydantic.TypeAdapter(list[LexicalDocument])


class _Corpus:
    """Frozen view of the index at one version.

    The BM25 model is built on first query, from whichever worker thread gets
    there first. Mutations to the index create a new corpus rather than
    touching this one.
    """

    def __init__(
        self,
        documents: Sequence[LexicalDocument],
        tokens: Sequence[Sequence[str]],
        symbol_terms: Sequence[frozenset[str]],
        symbol_boost: float,
    ) -> None:
        self.documents = documents
        self._tokens = tokens
        self._symbol_terms = symbol_terms
        self._symbol_boost = symbol_boost
        self._lock = threading.Lock()
        self._retriever: bm25s.BM25 | None = None
        self._vocab: dict[str, int] = {}
        self._symbol_rows: dict[str, list[int]] = {}

    def scores(self, terms: Sequence[str]) -> np.ndarray:
        """Boosted BM25 score of every document for the query terms."""
        retriever = self._model()
        total = np.zeros(len(self.documents), dtype=np.float64)
        for term in terms:
            if term not in self._vocab:
                continue
            contribution = np.asarray(retriever.get_scores([term]), dtype=np.float64)
            boosted = self._symbol_rows.get(term)
            if boosted:
                contribution[boosted] *= self._symbol_boost
            total += contribution
        return total

    def _model(self) -> bm25s.BM25:
        with self._lock:
            if self._retriever is None:
                vocab: dict[str, int] = {}
                ids = [[vocab.setdefault(token, len(vocab)) for token in tokens] for tokens in self._tokens]
                retriever = bm25s.BM25(k1=BM25_K1, b=BM25_B, method='lucene')
                if vocab:
                    retriever.index(Tokenized(ids=ids, vocab=vocab), show_progress=False)
                for row, symbols in enumerate(self._symbol_terms):
                    for term in symbols:
                        self._symbol_rows.setdefault(term, []).append(row)
                self._vocab = vocab
                self._retriever = retriever
            return self._retriever


class LexicalIndex:
    """BM25 index keyed by chunk id.

    Tokens are cached per chunk, so replacing one file's chunks only
    re-tokenizes that file. The BM25 model itself is rebuilt lazily on the
    first query after a change and scored off the event loop.
    """

    def __init__(self, *, symbol_boost: float = 2.0) -> None:
        self._symbol_boost = symbol_boost
        self._documents: dict[str, LexicalDocument] = {}
        self._tokens: dict[str, Sequence[str]] = {}
        self._symbol_terms: dict[str, frozenset[str]] = {}
        self._by_path: dict[str, set[str]] = {}
        self._corpus: _Corpus | None = None

    def __len__(self) -> int:
        return len(self._documents)

    def __contains__(self, chunk_id: object) -> bool:
        return chunk_id in self._documents

    def get(self, chunk_id: str) -> LexicalDocument | None:
        return self._documents.get(chunk_id)

    def paths(self) -> set[str]:
        """Paths with at least one indexed chunk."""
        return set(self._by_path)

    def upsert(self, documents: Iterable[LexicalDocument]) -> None:
        for document in documents:
            self._add(document)

    def remove(self, chunk_ids: Iterable[str]) -> int:
        removed = 0
        for chunk_id in chunk_ids:
            if chunk_id in self._documents:
                self._drop(chunk_id)
                removed += 1
        return removed

    def replace_file(self, path: str, documents: Iterable[LexicalDocument]) -> None:
        """Swap all of a file's chunks for ``documents``."""
        self.remove_file(path)
        for document in documents:
            self._add(document)

    def remove_file(self, path: str) -> int:
        chunk_ids = self._by_path.pop(path, set())
        for chunk_id in chunk_ids:
            self._drop(chunk_id)
        return len(chunk_ids)

    async def query_lexical(self, text: str, top_k: int, filters: SearchFilters | None = None) -> Sequence[LexicalHit]:
        """Top ``top_k`` chunks for ``text`` after ``filters``.

        Scoring runs via asyncio.to_thread so a large corpus does not block the
        event loop, and a caller's timeout can cancel the wait.
        """
        terms = sorted(set(tokenize(text)))
        if not terms or not self._documents or top_k < 1:
            return []
        corpus = self._current_corpus()
        return await asyncio.to_thread(self._rank, corpus, terms, top_k, filters)

    # --- Persistence ---

    def save(self, path: Path) -> None:
        documents = sorted(self._documents.values(), key=lambda d: d.chunk_id)
        try:
            atomic_write_text(path, _documents_adapter.dump_json(documents).decode())
        except OSError as e:
            raise StoreError(f'Failed to write lexical index {path}: {e}', transient=False) from e
        logger.debug(f'[LEXICAL] Saved {len(documents)} documents to {path}')

    @classmethod
    def load(cls, path: Path, *, symbol_boost: float = 2.0) -> LexicalIndex:
        """Load a saved index; a missing file yields an empty one."""
        index = cls(symbol_boost=symbol_boost)
        if not path.exists():
            return index
        try:
            documents = _documents_adapter.validate_json(path.read_bytes())
        except pydantic.ValidationError as e:
            raise StoreError(f'Corrupt lexical index {path}: {e}', transient=False) from e
        for document in documents:
            index._add(document)
        logger.info(f'[LEXICAL] Loaded {len(documents)} documents from {path}')
        return index

    # --- Internals ---

    @staticmethod
    def _rank(
        corpus: _Corpus,
        terms: Sequence[str],
        top_k: int,
        filters: SearchFilters | None,
    ) -> list[LexicalHit]:
        scores = corpus.scores(terms)
        scored: list[tuple[float, str]] = []
        for position in np.flatnonzero(scores > 0):
            document = corpus.documents[position]
            if filters is not None and not filters.matches(
                path=document.path, language=document.language, is_test=document.is_test
            ):
                continue
            scored.append((float(scores[position]), document.chunk_id))
        scored.sort(key=lambda item: (-item[0], item[1]))
        return [LexicalHit(chunk_id=chunk_id, score=score) for score, chunk_id in scored[:top_k]]

    def _current_corpus(self) -> _Corpus:
        if self._corpus is None:
            chunk_ids = list(self._documents)
            self._corpus = _Corpus(
                [self._documents[chunk_id] for chunk_id in chunk_ids],
                [self._tokens[chunk_id] for chunk_id in chunk_ids],
                [self._symbol_terms[chunk_id] for chunk_id in chunk_ids],
                self._symbol_boost,
            )
        return self._corpus

    def _add(self, document: LexicalDocument) -> None:
        if document.chunk_id in self._documents:
            self._drop(document.chunk_id)
        self._documents[document.chunk_id] = document
        self._tokens[document.chunk_id] = tokenize(document.text)
        self._symbol_terms[document.chunk_id] = frozenset(
            token for name in document.symbol_names for token in tokenize(name)
        )
        self._by_path.setdefault(document.path, set()).add(document.chunk_id)
        self._corpus = None

    def _drop(self, chunk_id: str) -> None:
        document = self._documents.pop(chunk_id)
        del self._tokens[chunk_id]
        del self._symbol_terms[chunk_id]
        path_ids = self._by_path.get(document.path)
        if path_ids is not None:
            path_ids.discard(chunk_id)
            if not path_ids:
                del self._by_path[document.path]
        self._corpus = None
