"""Hybrid ranking: cosine similarity, BM25, and Reciprocal Rank Fusion.

RRF combines rankings by position only, so BM25 scores and cosine
similarities never need normalising against each other:

    score(d) = Σ_rankings 1 / (k + i + 1)    i = 0-based position of d

Scores in a ``SearchResult`` are only comparable within one ranked list.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from marginalia.db.models import Chunk
from marginalia.rag.bm25 import DEFAULT_B, DEFAULT_K1, build_bm25_index, score_bm25_batch

DEFAULT_RRF_K = 60


@dataclass
class SearchResult:
    """A chunk and its score under the ranking method that produced it."""

    chunk: Chunk
    score: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of *a* and *b*; 0.0 for mismatched, empty, or zero vectors."""
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def rank_by_embeddings(query_vector: Sequence[float], chunks: Sequence[Chunk]) -> list[SearchResult]:
    results = [
        SearchResult(
            chunk=chunk,
            score=cosine_similarity(query_vector, chunk.embedding) if chunk.embedding else 0.0,
        )
        for chunk in chunks
    ]
    return _sorted(results)


def rank_by_bm25(
    query: str,
    chunks: Sequence[Chunk],
    k1: float = DEFAULT_K1,
    b: float = DEFAULT_B,
) -> list[SearchResult]:
    """BM25-rank *chunks* against an index built from *chunks* themselves."""
    index = build_bm25_index(chunks, k1=k1, b=b)
    scores = score_bm25_batch(query, chunks, index)
    return _sorted([SearchResult(chunk=c, score=s) for c, s in zip(chunks, scores)])


def reciprocal_rank_fusion(
    rankings: Sequence[Sequence[SearchResult]], k: int = DEFAULT_RRF_K
) -> list[SearchResult]:
    """Fuse *rankings* by reciprocal rank, keyed by chunk id.

    Every chunk present in any input ranking appears exactly once in the
    output, carrying the first Chunk instance seen for its id.
    """
    combined: dict[str, SearchResult] = {}
    for ranking in rankings:
        for i, result in enumerate(ranking):
            contribution = 1.0 / (k + i + 1)
            existing = combined.get(result.chunk.id)
            if existing is None:
                combined[result.chunk.id] = SearchResult(chunk=result.chunk, score=contribution)
            else:
                existing.score += contribution
    return _sorted(list(combined.values()))


def _sorted(results: list[SearchResult]) -> list[SearchResult]:
    # Stable: ties keep input order.
    return sorted(results, key=lambda r: r.score, reverse=True)
