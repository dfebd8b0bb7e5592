"""Message protocol between the indexing orchestrator and its background worker.

Every message crosses the boundary as a JSON-serializable dict with a
``type`` tag and a ``jobId`` correlation token:

    request:   {type: "index", jobId, document: {id, chapters: [{id, title, html}]},
                options: {targetTokens, maxTokens, overlapTokens}, chunkBatchSize}
    responses: {type: "chunk_batch", jobId, chunks, chapterIndex, totalChapters}
               {type: "progress", jobId, current, total}
               {type: "complete", jobId, chunkCount}

``parse_request`` / ``parse_response`` validate the shape on receipt and raise
``ProtocolError`` rather than trusting the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Union

from marginalia.db.models import Chapter, Chunk, Document
from marginalia.ingest.chunker import ChunkingOptions

DEFAULT_CHUNK_BATCH_SIZE = 50


class ProtocolError(ValueError):
    """Raised when a message does not match the worker protocol."""


@dataclass(frozen=True)
class IndexRequest:
    job_id: str
    document: Document
    options: ChunkingOptions
    chunk_batch_size: int = DEFAULT_CHUNK_BATCH_SIZE

    type: ClassVar[str] = "index"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "jobId": self.job_id,
            "document": {
                "id": self.document.id,
                "chapters": [
                    {"id": ch.id, "title": ch.title, "html": ch.html}
                    for ch in self.document.chapters
                ],
            },
            "options": self.options.to_dict(),
            "chunkBatchSize": self.chunk_batch_size,
        }


@dataclass(frozen=True)
class ChunkBatch:
    job_id: str
    chunks: list[Chunk]
    chapter_index: int
    total_chapters: int

    type: ClassVar[str] = "chunk_batch"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "jobId": self.job_id,
            "chunks": [c.to_dict() for c in self.chunks],
            "chapterIndex": self.chapter_index,
            "totalChapters": self.total_chapters,
        }


@dataclass(frozen=True)
class Progress:
    job_id: str
    current: int
    total: int

    type: ClassVar[str] = "progress"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "jobId": self.job_id, "current": self.current, "total": self.total}


@dataclass(frozen=True)
class Complete:
    job_id: str
    chunk_count: int

    type: ClassVar[str] = "complete"

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "jobId": self.job_id, "chunkCount": self.chunk_count}


WorkerResponse = Union[ChunkBatch, Progress, Complete]


# ------------------------------------------------------------------
# Parsing
# ------------------------------------------------------------------


def parse_request(data: Any) -> IndexRequest:
    """Validate and decode an index request dict.

    A non-positive ``chunkBatchSize`` falls back to the default batch size.
    """
    _expect_type(data, IndexRequest.type)
    job_id = _field(data, "jobId", str)
    raw_document = _field(data, "document", dict)
    raw_chapters = _field(raw_document, "chapters", list)

    chapters: list[Chapter] = []
    for raw in raw_chapters:
        if not isinstance(raw, dict):
            raise ProtocolError("chapter entries must be objects")
        chapters.append(
            Chapter(
                id=_field(raw, "id", str),
                title=str(raw.get("title", "")),
                html=_field(raw, "html", str),
            )
        )

    try:
        options = ChunkingOptions.from_dict(_field(data, "options", dict))
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"invalid chunking options: {exc}") from exc

    batch_size = data.get("chunkBatchSize")
    if not isinstance(batch_size, int) or isinstance(batch_size, bool) or batch_size <= 0:
        batch_size = DEFAULT_CHUNK_BATCH_SIZE

    return IndexRequest(
        job_id=job_id,
        document=Document(id=_field(raw_document, "id", str), chapters=chapters),
        options=options,
        chunk_batch_size=batch_size,
    )


def parse_response(data: Any) -> WorkerResponse:
    """Validate and decode a worker response dict."""
    if not isinstance(data, dict):
        raise ProtocolError(f"message must be an object, got {type(data).__name__}")
    job_id = _field(data, "jobId", str)
    kind = data.get("type")

    if kind == ChunkBatch.type:
        raw_chunks = _field(data, "chunks", list)
        try:
            chunks = [Chunk.from_dict(c) for c in raw_chunks]
        except (KeyError, TypeError, ValueError) as exc:
            raise ProtocolError(f"invalid chunk in batch: {exc!r}") from exc
        return ChunkBatch(
            job_id=job_id,
            chunks=chunks,
            chapter_index=_field(data, "chapterIndex", int),
            total_chapters=_field(data, "totalChapters", int),
        )
    if kind == Progress.type:
        return Progress(
            job_id=job_id,
            current=_field(data, "current", int),
            total=_field(data, "total", int),
        )
    if kind == Complete.type:
        return Complete(job_id=job_id, chunk_count=_field(data, "chunkCount", int))
    raise ProtocolError(f"unknown message type {kind!r}")


def _expect_type(data: Any, expected: str) -> None:
    if not isinstance(data, dict):
        raise ProtocolError(f"message must be an object, got {type(data).__name__}")
    if data.get("type") != expected:
        raise ProtocolError(f"expected message type {expected!r}, got {data.get('type')!r}")


def _field(data: dict[str, Any], key: str, kind: type) -> Any:
    value = data.get(key)
    if not isinstance(value, kind) or (kind is int and isinstance(value, bool)):
        raise ProtocolError(f"field {key!r} must be {kind.__name__}, got {value!r}")
    return value
