"""Embedding request intent shared by providers."""

from __future__ import annotations

from typing import Literal

__all__ = [
    'TaskIntent',
]

# 'document' when indexing chunks, 'query' when embedding a search query.
# Each provider translates this to its own task type.
type TaskIntent = Literal['document', 'query']
