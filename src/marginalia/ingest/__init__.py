"""marginalia ingest pipeline: tokenizer, paragraph extraction, chunker, EPUB loader, embeddings."""

from marginalia.ingest.chunker import (
    ChunkingOptions,
    build_document_chunks,
    chunk_chapter,
    chunk_paragraphs,
    chunk_text,
)
from marginalia.ingest.epub import EpubError, load_epub
from marginalia.ingest.paragraphs import extract_paragraphs, extract_paragraphs_regex
from marginalia.ingest.tokenizer import estimate_token_count, tokenize

__all__ = [
    "ChunkingOptions",
    "build_document_chunks",
    "chunk_chapter",
    "chunk_paragraphs",
    "chunk_text",
    "EpubError",
    "load_epub",
    "extract_paragraphs",
    "extract_paragraphs_regex",
    "estimate_token_count",
    "tokenize",
]
