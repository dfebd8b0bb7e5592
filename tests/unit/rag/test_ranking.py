"""Tests for cosine ranking, BM25 ranking and reciprocal rank fusion."""

from __future__ import annotations

import pytest

from marginalia.db.models import Chunk
from marginalia.rag.ranking import (
    SearchResult,
    cosine_similarity,
    rank_by_bm25,
    rank_by_embeddings,
    reciprocal_rank_fusion,
)


def _chunk(i: int, text: str = "", embedding=None) -> Chunk:
    return Chunk(
        id=f"d-c-chunk-{i}",
        document_id="d",
        chapter_id="c",
        chapter_title="",
        chunk_index=i,
        text=text,
        embedding=embedding,
    )


def _ids(results):
    return [r.chunk.id for r in results]


# ------------------------------------------------------------------
# cosine_similarity
# ------------------------------------------------------------------

def test_cosine_identical_vectors():
    assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)


def test_cosine_orthogonal_vectors():
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)


def test_cosine_ignores_magnitude():
    assert cosine_similarity([1.0, 1.0], [5.0, 5.0]) == pytest.approx(1.0)


@pytest.mark.parametrize("a,b", [
    ([1.0, 0.0], [1.0, 0.0, 0.0]),
    ([], []),
    ([0.0, 0.0], [1.0, 0.0]),
])
def test_cosine_degenerate_inputs_return_zero(a, b):
    assert cosine_similarity(a, b) == 0.0


# ------------------------------------------------------------------
# rank_by_embeddings / rank_by_bm25
# ------------------------------------------------------------------

def test_rank_by_embeddings_orders_by_similarity():
    chunks = [
        _chunk(0, embedding=[0.0, 1.0]),
        _chunk(1, embedding=[1.0, 0.0]),
        _chunk(2, embedding=[0.7, 0.7]),
    ]
    results = rank_by_embeddings([1.0, 0.0], chunks)
    assert _ids(results) == ["d-c-chunk-1", "d-c-chunk-2", "d-c-chunk-0"]


def test_rank_by_embeddings_missing_vector_scores_zero():
    chunks = [_chunk(0), _chunk(1, embedding=[1.0, 0.0])]
    results = rank_by_embeddings([1.0, 0.0], chunks)
    assert results[0].chunk.id == "d-c-chunk-1"
    assert results[1].score == 0.0


def test_rank_by_bm25_orders_by_relevance():
    chunks = [_chunk(0, "nothing relevant"), _chunk(1, "apples and more apples")]
    results = rank_by_bm25("apples", chunks)
    assert _ids(results) == ["d-c-chunk-1", "d-c-chunk-0"]
    assert results[1].score == 0.0


def test_rank_ties_keep_input_order():
    chunks = [_chunk(i, "same words") for i in range(4)]
    results = rank_by_bm25("unrelated", chunks)
    assert _ids(results) == [c.id for c in chunks]


# ------------------------------------------------------------------
# reciprocal_rank_fusion
# ------------------------------------------------------------------

def test_rrf_scores_by_position():
    a, b = _chunk(0), _chunk(1)
    fused = reciprocal_rank_fusion([[SearchResult(a, 9.0), SearchResult(b, 1.0)]], k=60)
    assert fused[0].score == pytest.approx(1 / 61)
    assert fused[1].score == pytest.approx(1 / 62)


def test_rrf_sums_contributions_across_rankings():
    a, b, c = _chunk(0), _chunk(1), _chunk(2)
    first = [SearchResult(a, 0.9), SearchResult(b, 0.5)]
    second = [SearchResult(b, 3.0), SearchResult(c, 1.0)]
    fused = reciprocal_rank_fusion([first, second], k=60)

    scores = {r.chunk.id: r.score for r in fused}
    assert scores[b.id] == pytest.approx(1 / 62 + 1 / 61)
    assert scores[a.id] == pytest.approx(1 / 61)
    assert scores[c.id] == pytest.approx(1 / 62)
    assert fused[0].chunk.id == b.id


def test_rrf_each_chunk_appears_once():
    chunks = [_chunk(i) for i in range(3)]
    ranking = [SearchResult(c, 1.0) for c in chunks]
    fused = reciprocal_rank_fusion([ranking, list(reversed(ranking))])
    assert sorted(_ids(fused)) == sorted(c.id for c in chunks)


def test_rrf_ignores_raw_scores():
    a, b = _chunk(0), _chunk(1)
    tiny = reciprocal_rank_fusion([[SearchResult(a, 0.001), SearchResult(b, 0.0001)]])
    huge = reciprocal_rank_fusion([[SearchResult(a, 1000.0), SearchResult(b, 999.0)]])
    assert [r.score for r in tiny] == pytest.approx([r.score for r in huge])


def test_rrf_keeps_first_chunk_instance():
    first = _chunk(0, "first")
    second = _chunk(0, "second")
    fused = reciprocal_rank_fusion([[SearchResult(first, 1.0)], [SearchResult(second, 1.0)]])
    assert fused[0].chunk.text == "first"


def test_rrf_empty_input():
    assert reciprocal_rank_fusion([]) == []
    assert reciprocal_rank_fusion([[], []]) == []
