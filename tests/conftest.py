"""Shared pytest fixtures."""

from __future__ import annotations

import math

import pytest

from marginalia.db.connection import Database
from marginalia.db.migrations import initialize
from marginalia.db.store import SqliteChunkStore
from marginalia.ingest.tokenizer import tokenize


class FakeProvider:
    """Deterministic bag-of-words embedder over a fixed vocabulary."""

    def __init__(self, model: str = "fake-embedder", vocabulary: tuple[str, ...] = ()) -> None:
        self.model = model
        self.vocabulary = vocabulary or (
            "apples", "bananas", "ocean", "desert", "waves", "sand", "fruit", "sea",
        )
        self.calls: list[list[str]] = []

    def embed(self, texts):
        self.calls.append(list(texts))
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> list[float]:
        tokens = tokenize(text)
        counts = [float(tokens.count(word)) for word in self.vocabulary]
        norm = math.sqrt(sum(c * c for c in counts))
        if norm == 0.0:
            return [0.0] * len(counts)
        return [c / norm for c in counts]


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".marginalia.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def store(tmp_db):
    return SqliteChunkStore(tmp_db)


@pytest.fixture
def fake_provider():
    return FakeProvider()
