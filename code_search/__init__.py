"""Incremental code indexing with hybrid lexical and semantic retrieval.

Layers (leaves first):
- schemas: frozen pydantic records and configuration
- clients: embedding provider, vector store and Redis adapters
- repositories: snapshot stores and the lexical index
- services: chunker, sync engine, indexing pipeline and retrieval
"""

from __future__ import annotations
