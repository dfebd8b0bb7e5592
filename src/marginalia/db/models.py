"""Domain models for the marginalia retrieval layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Chapter:
    id: str
    title: str
    html: str


@dataclass
class Document:
    id: str
    title: str = ""
    chapters: list[Chapter] = field(default_factory=list)


@dataclass
class RawChunk:
    """Chunker output before provenance is attached.

    Offsets are running token positions within the chapter, kept only for
    overlap bookkeeping.
    """

    text: str
    offset_start: int
    offset_end: int


@dataclass
class Chunk:
    id: str
    document_id: str
    chapter_id: str
    chapter_title: str
    chunk_index: int
    text: str
    offset_start: int = 0
    offset_end: int = 0
    embedding: list[float] | None = None
    embedding_model: str | None = None

    @property
    def composite_key(self) -> str:
        return composite_key(self.document_id, self.chapter_id)

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON-serializable wire form used across the worker boundary."""
        data: dict[str, Any] = {
            "id": self.id,
            "documentId": self.document_id,
            "chapterId": self.chapter_id,
            "chapterTitle": self.chapter_title,
            "compositeKey": self.composite_key,
            "chunkIndex": self.chunk_index,
            "text": self.text,
            "offsetStart": self.offset_start,
            "offsetEnd": self.offset_end,
        }
        if self.embedding is not None:
            data["embedding"] = list(self.embedding)
            data["embeddingModel"] = self.embedding_model
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Chunk:
        """Build a Chunk from its wire form.

        Raises:
            KeyError: If a required key is missing.
            TypeError / ValueError: If a field has the wrong type.
        """
        embedding = data.get("embedding")
        return cls(
            id=str(data["id"]),
            document_id=str(data["documentId"]),
            chapter_id=str(data["chapterId"]),
            chapter_title=str(data.get("chapterTitle", "")),
            chunk_index=int(data["chunkIndex"]),
            text=str(data["text"]),
            offset_start=int(data.get("offsetStart", 0)),
            offset_end=int(data.get("offsetEnd", 0)),
            embedding=[float(v) for v in embedding] if embedding is not None else None,
            embedding_model=data.get("embeddingModel"),
        )


@dataclass
class DocumentStats:
    """Per-document chunk counts reported by the store."""

    document_id: str
    chunk_count: int
    embedded_count: int
    chapter_count: int


def composite_key(document_id: str, chapter_id: str) -> str:
    return f"{document_id}:{chapter_id}"


def build_chunk_id(document_id: str, chapter_id: str, index: int) -> str:
    return f"{document_id}-{chapter_id}-chunk-{index}"
