"""Embedding blob encoding for the chunks table."""

from __future__ import annotations

import numpy as np
import sqlite_vec


def serialize_embedding(embedding: list[float]) -> bytes:
    """Encode *embedding* as a little-endian float32 blob (sqlite-vec format)."""
    if not embedding:
        raise ValueError("embedding must contain at least one dimension")
    return sqlite_vec.serialize_float32(embedding)


def deserialize_embedding(blob: bytes | None) -> list[float] | None:
    """Decode a float32 blob written by serialize_embedding(); None passes through."""
    if blob is None:
        return None
    return np.frombuffer(blob, dtype="<f4").astype(float).tolist()
