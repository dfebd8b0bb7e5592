"""marginalia: passage retrieval for long-form reading."""

from marginalia.ingest.chunker import ChunkingOptions, chunk_text

__version__ = "0.1.0"

__all__ = ["ChunkingOptions", "chunk_text", "__version__"]
