"""BM25 lexical scoring over an in-memory chunk set.

The index is derived data: it is rebuilt for every search over whatever
candidate set is being searched (a whole document or one chapter) and never
persisted.

Formula:
    idf(t)   = ln(1 + (N - df(t) + 0.5) / (df(t) + 0.5))
    score(d) = Σ_t idf(t) · tf(t,d)·(k1 + 1) / (tf(t,d) + k1·(1 - b + b·|d|/avgdl))

where the sum runs over the unique query terms.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field

from marginalia.db.models import Chunk
from marginalia.ingest.tokenizer import tokenize

DEFAULT_K1 = 1.5
DEFAULT_B = 0.75


@dataclass
class BM25Index:
    """Corpus statistics for one candidate set.

    Attributes:
        k1: Term frequency saturation.
        b: Length normalisation.
        avg_doc_length: Mean token count per chunk (0 for an empty set).
        doc_count: Number of chunks indexed.
        term_doc_freq: Number of chunks containing each term.
    """

    k1: float = DEFAULT_K1
    b: float = DEFAULT_B
    avg_doc_length: float = 0.0
    doc_count: int = 0
    term_doc_freq: dict[str, int] = field(default_factory=dict)

    def idf(self, term: str) -> float:
        df = self.term_doc_freq.get(term, 0)
        return math.log(1 + (self.doc_count - df + 0.5) / (df + 0.5))


def build_bm25_index(
    chunks: Sequence[Chunk], k1: float = DEFAULT_K1, b: float = DEFAULT_B
) -> BM25Index:
    term_doc_freq: Counter[str] = Counter()
    total_tokens = 0
    for chunk in chunks:
        tokens = tokenize(chunk.text)
        total_tokens += len(tokens)
        term_doc_freq.update(set(tokens))

    doc_count = len(chunks)
    return BM25Index(
        k1=k1,
        b=b,
        avg_doc_length=total_tokens / doc_count if doc_count else 0.0,
        doc_count=doc_count,
        term_doc_freq=dict(term_doc_freq),
    )


def score_bm25(query: str, chunk: Chunk, index: BM25Index) -> float:
    """Score a single chunk against *query*. Unmatched terms contribute 0."""
    return _score_tokens(_unique(tokenize(query)), tokenize(chunk.text), index)


def score_bm25_batch(query: str, chunks: Sequence[Chunk], index: BM25Index) -> list[float]:
    """Score every chunk against *query*; one float per chunk, in input order."""
    query_terms = _unique(tokenize(query))
    if not query_terms or not chunks:
        return [0.0] * len(chunks)
    return [_score_tokens(query_terms, tokenize(chunk.text), index) for chunk in chunks]


def _score_tokens(query_terms: list[str], doc_tokens: list[str], index: BM25Index) -> float:
    if not query_terms or not doc_tokens:
        return 0.0

    term_counts = Counter(doc_tokens)
    doc_length = len(doc_tokens)
    avg_doc_length = index.avg_doc_length or 1.0
    norm = index.k1 * (1 - index.b + index.b * (doc_length / avg_doc_length))

    score = 0.0
    for term in query_terms:
        tf = term_counts.get(term, 0)
        if tf == 0:
            continue
        score += index.idf(term) * (tf * (index.k1 + 1)) / (tf + norm)
    return score


def _unique(tokens: list[str]) -> list[str]:
    """De-duplicate *tokens*, keeping first-seen order."""
    return list(dict.fromkeys(tokens))
