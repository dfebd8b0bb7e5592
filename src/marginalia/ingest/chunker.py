"""Paragraph-packing chunker with sentence and word-window fallbacks.

Strategy:
- Pack whole paragraphs greedily up to ``target_tokens``.
- When a chunk is flushed, the next one is seeded with trailing paragraphs of
  the flushed chunk until at least ``overlap_tokens`` are carried over.
- A paragraph above ``max_tokens`` is split on sentence terminators and the
  sentences are packed the same way.
- A sentence above ``max_tokens`` is cut into whitespace word windows of
  ``target_tokens`` words with ``overlap_tokens`` words of overlap.

Every emitted chunk has an estimated token count <= ``max_tokens`` and every
loop advances, so arbitrary input terminates.
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from marginalia.db.models import Chapter, Chunk, Document, RawChunk, build_chunk_id
from marginalia.ingest.paragraphs import extract_paragraphs
from marginalia.ingest.tokenizer import WORD_RE, estimate_token_count, split_into_paragraphs

_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]+|[^.!?]+$")
_WORD_WITH_SPACE_RE = re.compile(r"\S+\s*")

PARAGRAPH_SEPARATOR = "\n\n"


@dataclass(frozen=True)
class ChunkingOptions:
    """Chunk sizing, in estimated tokens.

    Attributes:
        target_tokens: Soft chunk size; packing stops before exceeding it.
        max_tokens: Hard ceiling; larger paragraphs and sentences are split.
        overlap_tokens: Trailing context carried into the next chunk.
    """

    target_tokens: int = 400
    max_tokens: int = 500
    overlap_tokens: int = 100

    def __post_init__(self) -> None:
        if self.target_tokens < 1:
            raise ValueError("target_tokens must be >= 1")
        if self.overlap_tokens < 0:
            raise ValueError("overlap_tokens must be >= 0")
        if not self.overlap_tokens < self.target_tokens <= self.max_tokens:
            raise ValueError(
                "chunking options must satisfy overlap_tokens < target_tokens <= max_tokens "
                f"(got overlap={self.overlap_tokens}, target={self.target_tokens}, "
                f"max={self.max_tokens})"
            )

    def to_dict(self) -> dict[str, int]:
        return {
            "targetTokens": self.target_tokens,
            "maxTokens": self.max_tokens,
            "overlapTokens": self.overlap_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, int]) -> ChunkingOptions:
        defaults = cls()
        return cls(
            target_tokens=int(data.get("targetTokens", defaults.target_tokens)),
            max_tokens=int(data.get("maxTokens", defaults.max_tokens)),
            overlap_tokens=int(data.get("overlapTokens", defaults.overlap_tokens)),
        )


# ------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------


def chunk_text(text: str, options: ChunkingOptions | None = None) -> list[RawChunk]:
    """Chunk plain text whose paragraphs are separated by blank lines."""
    return chunk_paragraphs(split_into_paragraphs(text), options or ChunkingOptions())


def chunk_chapter(
    chapter: Chapter, options: ChunkingOptions, structural: bool = True
) -> list[RawChunk]:
    return chunk_paragraphs(extract_paragraphs(chapter.html, structural=structural), options)


def iter_chapter_chunks(
    document: Document, options: ChunkingOptions, structural: bool = True
) -> Iterator[tuple[int, list[Chunk]]]:
    """Yield ``(chapter_index, chunks)`` for every chapter of *document*, in order.

    Chapters without text yield an empty list. Chunk ids use a running index
    across the whole document, starting at 0.
    """
    chunk_index = 0
    for chapter_index, chapter in enumerate(document.chapters):
        chunks: list[Chunk] = []
        for raw in chunk_chapter(chapter, options, structural=structural):
            chunks.append(
                Chunk(
                    id=build_chunk_id(document.id, chapter.id, chunk_index),
                    document_id=document.id,
                    chapter_id=chapter.id,
                    chapter_title=chapter.title,
                    chunk_index=chunk_index,
                    text=raw.text,
                    offset_start=raw.offset_start,
                    offset_end=raw.offset_end,
                )
            )
            chunk_index += 1
        yield chapter_index, chunks


def build_document_chunks(
    document: Document, options: ChunkingOptions, structural: bool = True
) -> list[Chunk]:
    return [
        chunk
        for _, chunks in iter_chapter_chunks(document, options, structural=structural)
        for chunk in chunks
    ]


def chunk_paragraphs(paragraphs: Sequence[str], options: ChunkingOptions) -> list[RawChunk]:
    """Greedily pack *paragraphs* into overlapping token-bounded chunks."""
    chunks: list[RawChunk] = []
    current: list[str] = []
    counts: list[int] = []
    offset = 0
    chunk_start = 0

    for paragraph in paragraphs:
        tokens = estimate_token_count(paragraph)

        if tokens > options.max_tokens:
            if current:
                chunks.append(_join(current, chunk_start, offset))
                current, counts = [], []
            for piece in _split_long_paragraph(paragraph, options, offset):
                chunks.append(piece)
                offset = piece.offset_end
            chunk_start = offset
            continue

        if current and sum(counts) + tokens > options.target_tokens:
            chunks.append(_join(current, chunk_start, offset))
            current, counts = _take_overlap(
                current, counts, options.overlap_tokens, options.max_tokens - tokens
            )
            chunk_start = max(0, offset - sum(counts))

        current.append(paragraph)
        counts.append(tokens)
        offset += tokens

    if current:
        chunks.append(_join(current, chunk_start, offset))

    return chunks


# ------------------------------------------------------------------
# Packing helpers
# ------------------------------------------------------------------


def _join(paragraphs: list[str], start: int, end: int) -> RawChunk:
    return RawChunk(text=PARAGRAPH_SEPARATOR.join(paragraphs).strip(), offset_start=start, offset_end=end)


def _take_overlap(
    paragraphs: list[str], counts: list[int], overlap_tokens: int, budget: int
) -> tuple[list[str], list[int]]:
    """Return the trailing paragraphs carrying >= *overlap_tokens* tokens.

    The oldest carried paragraphs are dropped while the total exceeds *budget*
    (room left under ``max_tokens`` for the incoming paragraph).
    """
    if overlap_tokens <= 0:
        return [], []

    kept: list[str] = []
    kept_counts: list[int] = []
    total = 0
    for paragraph, count in zip(reversed(paragraphs), reversed(counts)):
        kept.insert(0, paragraph)
        kept_counts.insert(0, count)
        total += count
        if total >= overlap_tokens:
            break

    while kept and total > budget:
        total -= kept_counts.pop(0)
        kept.pop(0)

    return kept, kept_counts


def _split_long_paragraph(
    paragraph: str, options: ChunkingOptions, offset: int
) -> list[RawChunk]:
    """Split an oversized paragraph by sentence, then by word windows."""
    sentences = _SENTENCE_RE.findall(paragraph) or [paragraph]
    pieces: list[RawChunk] = []
    buffer: list[str] = []
    buffer_tokens = 0

    for sentence in sentences:
        sentence = sentence.strip()
        if not sentence:
            continue
        tokens = estimate_token_count(sentence)

        if tokens > options.max_tokens:
            if buffer:
                pieces.append(RawChunk(" ".join(buffer), offset, offset + buffer_tokens))
                offset += buffer_tokens
                buffer, buffer_tokens = [], 0
            windows = _split_by_word_windows(sentence, options, offset)
            if windows:
                offset = windows[-1].offset_end
            pieces.extend(windows)
            continue

        if buffer and buffer_tokens + tokens > options.target_tokens:
            pieces.append(RawChunk(" ".join(buffer), offset, offset + buffer_tokens))
            offset += buffer_tokens
            buffer, buffer_tokens = [], 0

        buffer.append(sentence)
        buffer_tokens += tokens

    if buffer:
        pieces.append(RawChunk(" ".join(buffer), offset, offset + buffer_tokens))

    return pieces


def _split_by_word_windows(
    sentence: str, options: ChunkingOptions, offset: int
) -> list[RawChunk]:
    """Cut *sentence* into windows of ``target_tokens`` whitespace-delimited words.

    A window whose token estimate exceeds ``max_tokens`` is shrunk word by
    word; a lone word above ``max_tokens`` is cut on token boundaries.
    """
    words = _explode_oversized_words(_WORD_WITH_SPACE_RE.findall(sentence), options.max_tokens)
    if not words:
        return []

    windows: list[RawChunk] = []
    start = 0
    while start < len(words):
        end = min(start + options.target_tokens, len(words))
        text = "".join(words[start:end]).strip()
        while end - start > 1 and estimate_token_count(text) > options.max_tokens:
            end -= 1
            text = "".join(words[start:end]).strip()
        if text:
            windows.append(RawChunk(text, offset + start, offset + end))
        if end >= len(words):
            break
        start = max(start + 1, end - options.overlap_tokens)
    return windows


def _explode_oversized_words(words: list[str], max_tokens: int) -> list[str]:
    """Split any single word carrying more than *max_tokens* tokens."""
    result: list[str] = []
    for word in words:
        if estimate_token_count(word) <= max_tokens:
            result.append(word)
            continue
        spans = [m.end() for m in WORD_RE.finditer(word)]
        cut = 0
        for i in range(max_tokens - 1, len(spans), max_tokens):
            result.append(word[cut : spans[i]] + " ")
            cut = spans[i]
        if word[cut:].strip():
            result.append(word[cut:])
    return result
