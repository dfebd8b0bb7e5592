"""Retrieval failures surfaced to callers.

Only genuinely exceptional conditions are raised: searching a scope that has
no chunks, and an indexing run that produced nothing. Algorithmic edge cases
(oversized paragraphs, empty queries, missing embeddings) are handled where
they occur.
"""

from __future__ import annotations


class RetrievalError(Exception):
    """Base class for retrieval failures tied to one document."""

    code = "RETRIEVAL_ERROR"

    def __init__(self, message: str, document_id: str) -> None:
        super().__init__(message)
        self.document_id = document_id


class NotIndexedError(RetrievalError):
    """The requested document (or chapter scope) has no chunks to search."""

    code = "NOT_INDEXED"


class ChunkingProducedNothingError(RetrievalError):
    """An indexing run completed without producing a single chunk."""

    code = "NO_CHUNKS"
