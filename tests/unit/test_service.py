"""Tests for the Retriever service: indexing, hybrid search and lifecycle."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from marginalia.config import MarginaliaConfig
from marginalia.db.models import Chapter, Document
from marginalia.errors import ChunkingProducedNothingError, NotIndexedError
from marginalia.indexing.scheduler import InlineScheduler, Scheduler, WorkerScheduler
from marginalia.indexing.status import IndexState
from marginalia.indexing.worker import iter_index_messages
from marginalia.ingest.chunker import ChunkingOptions
from marginalia.ingest.embeddings import EmbeddingProviderLoader
from marginalia.ingest.tokenizer import estimate_token_count
from marginalia.rag.ranking import rank_by_bm25
from marginalia.service import IndexOptions, Retriever, SearchOptions, SearchScope

_SMALL = IndexOptions(chunking=ChunkingOptions(target_tokens=30, max_tokens=40, overlap_tokens=5))


def _fruit_book() -> Document:
    return Document(
        id="book-1",
        title="Test Book",
        chapters=[
            Chapter("ch-1", "Chapter One", "Apples are crisp and bright.\n\nThey grow in orchards."),
            Chapter("ch-2", "Chapter Two", "Bananas are soft and sweet.\n\nThey grow in bunches."),
        ],
    )


def _scope_book() -> Document:
    return Document(
        id="book-2",
        title="Scope Book",
        chapters=[
            Chapter("ch-1", "Chapter One", "The ocean is calm and wide."),
            Chapter("ch-2", "Chapter Two", "The desert is vast and dry."),
        ],
    )


def _long_book() -> Document:
    text = " ".join(f"word{i}" for i in range(220))
    return Document(id="book-3", title="Reindex Book", chapters=[Chapter("ch-1", "Chapter One", text)])


def _retriever(store, provider=None, **kwargs) -> Retriever:
    return Retriever(store, embeddings=EmbeddingProviderLoader.resolved(provider), **kwargs)


class _GatedScheduler(Scheduler):
    """Inline scheduler that pauses after its first message until released."""

    name = "gated"

    def __init__(self) -> None:
        self.first_sent = asyncio.Event()
        self.gate = asyncio.Event()

    async def run(self, request):
        for i, message in enumerate(iter_index_messages(request)):
            yield message
            if i == 0:
                self.first_sent.set()
                await self.gate.wait()


class _BrokenContext:
    def Queue(self):
        raise OSError("no semaphores")


# ------------------------------------------------------------------
# Search scenarios
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_hybrid_search_finds_relevant_chunk(store, fake_provider):
    retriever = _retriever(store, fake_provider)
    book = _fruit_book()

    await retriever.index_document(book, _SMALL)
    await retriever.backfill.join()
    results = await retriever.search("bananas", book.id, SearchOptions(top_k=1))

    assert len(results) == 1
    assert "bananas" in results[0].chunk.text.lower()
    # First in both the embedding and the BM25 ranking.
    assert results[0].score == pytest.approx(2 / 61)
    await retriever.close()


@pytest.mark.asyncio
async def test_chapter_scope_only_returns_that_chapter(store):
    retriever = _retriever(store)
    book = _scope_book()

    await retriever.index_document(book, _SMALL)
    results = await retriever.search(
        "desert", book.id, SearchOptions(scope=SearchScope.CHAPTER, chapter_id="ch-1", top_k=2)
    )

    assert len(results) > 0
    assert all(r.chunk.chapter_id == "ch-1" for r in results)


@pytest.mark.asyncio
async def test_reindex_applies_new_chunk_settings(store):
    retriever = _retriever(store)
    book = _long_book()

    await retriever.index_document(
        book, IndexOptions(ChunkingOptions(target_tokens=80, max_tokens=90, overlap_tokens=0))
    )
    initial = await store.get_chunks_by_document(book.id)

    await retriever.reindex_document(
        book, IndexOptions(ChunkingOptions(target_tokens=20, max_tokens=25, overlap_tokens=0))
    )
    reindexed = await store.get_chunks_by_document(book.id)

    assert len(reindexed) > len(initial)
    assert all(estimate_token_count(c.text) <= 25 for c in reindexed)
    assert [c.chunk_index for c in reindexed] == list(range(len(reindexed)))


@pytest.mark.asyncio
async def test_search_without_provider_is_pure_bm25(store):
    retriever = _retriever(store)
    book = _fruit_book()

    await retriever.index_document(book, _SMALL)
    results = await retriever.search("apples", book.id)

    assert results[0].chunk.chapter_id == "ch-1"
    assert results[0].score > 1 / 61
    assert results[-1].score == 0.0


@pytest.mark.asyncio
async def test_search_with_missing_embeddings_degrades_and_backfills(store, fake_provider):
    retriever = _retriever(store, fake_provider)
    book = _fruit_book()

    await retriever.index_document(book, IndexOptions(_SMALL.chunking, generate_embeddings=False))
    stored = await store.get_chunks_by_document(book.id)
    results = await retriever.search("bananas", book.id)
    expected = rank_by_bm25("bananas", stored)[:12]
    assert [(r.chunk.id, r.score) for r in results] == [(r.chunk.id, r.score) for r in expected]
    assert results[0].chunk.chapter_id == "ch-2"

    await retriever.backfill.join()
    assert all(c.embedding is not None for c in await store.get_chunks_by_document(book.id))
    hybrid = await retriever.search("bananas", book.id)
    assert hybrid[0].score == pytest.approx(2 / 61)


@pytest.mark.asyncio
async def test_query_embedding_failure_falls_back_to_bm25(store, fake_provider):
    retriever = _retriever(store, fake_provider)
    book = _fruit_book()
    await retriever.index_document(book, _SMALL)
    await retriever.backfill.join()

    fake_provider.embed = MagicMock(side_effect=RuntimeError("rate limited"))
    results = await retriever.search("bananas", book.id)

    assert results[0].chunk.chapter_id == "ch-2"
    assert results[-1].score == 0.0


@pytest.mark.asyncio
async def test_fusion_matches_manual_rrf(store, fake_provider):
    retriever = _retriever(store, fake_provider, rrf_k=10)
    book = _scope_book()
    await retriever.index_document(book, _SMALL)
    await retriever.backfill.join()

    results = await retriever.search("ocean waves", book.id)
    assert results[0].chunk.chapter_id == "ch-1"
    assert results[0].score == pytest.approx(2 / 11)
    assert results[1].score == pytest.approx(2 / 12)


@pytest.mark.asyncio
async def test_top_k_limits_results(store):
    retriever = _retriever(store, top_k=1)
    await retriever.index_document(_fruit_book(), _SMALL)
    assert len(await retriever.search("grow", "book-1")) == 1
    assert len(await retriever.search("grow", "book-1", SearchOptions(top_k=5))) == 2


@pytest.mark.asyncio
async def test_search_unindexed_document_raises(store):
    retriever = _retriever(store)
    with pytest.raises(NotIndexedError) as exc_info:
        await retriever.search("anything", "ghost")
    assert exc_info.value.code == "NOT_INDEXED"
    assert exc_info.value.document_id == "ghost"


@pytest.mark.asyncio
async def test_chapter_scope_without_chapter_raises(store):
    retriever = _retriever(store)
    await retriever.index_document(_scope_book(), _SMALL)
    with pytest.raises(NotIndexedError):
        await retriever.search("ocean", "book-2", SearchOptions(scope=SearchScope.CHAPTER))


@pytest.mark.asyncio
async def test_empty_query_returns_zero_scores(store):
    retriever = _retriever(store)
    await retriever.index_document(_fruit_book(), _SMALL)
    results = await retriever.search("", "book-1")
    assert [r.chunk.chapter_id for r in results] == ["ch-1", "ch-2"]
    assert {r.score for r in results} == {0.0}


# ------------------------------------------------------------------
# Indexing
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_index_status_transitions(store, fake_provider):
    retriever = _retriever(store, fake_provider)
    states: list[IndexState] = []
    retriever.statuses.subscribe(lambda s: states.append(s.state))

    await retriever.index_document(_fruit_book(), _SMALL)
    await retriever.backfill.join()

    assert states[0] is IndexState.CHUNKING
    assert IndexState.CHUNKED_LEXICAL_READY in states
    assert states.index(IndexState.CHUNKED_LEXICAL_READY) < states.index(
        IndexState.EMBEDDING_BACKFILL
    )
    assert states[-1] is IndexState.FULLY_INDEXED
    status = await retriever.status("book-1")
    assert status.chunk_count == 2
    assert status.progress == 100


@pytest.mark.asyncio
async def test_index_is_idempotent(store):
    retriever = _retriever(store)
    book = _fruit_book()
    await retriever.index_document(book, _SMALL)
    before = await store.get_chunks_by_document(book.id)

    await retriever.index_document(
        book, IndexOptions(ChunkingOptions(target_tokens=2, max_tokens=3, overlap_tokens=0))
    )

    assert await store.get_chunks_by_document(book.id) == before


@pytest.mark.asyncio
async def test_chunk_ids_follow_document_chapter_index(store):
    retriever = _retriever(store)
    await retriever.index_document(_fruit_book(), _SMALL)
    chunks = await store.get_chunks_by_document("book-1")
    assert [c.id for c in chunks] == ["book-1-ch-1-chunk-0", "book-1-ch-2-chunk-1"]
    assert chunks[1].composite_key == "book-1:ch-2"


@pytest.mark.asyncio
async def test_empty_document_raises_no_chunks(store):
    retriever = _retriever(store)
    book = Document(id="empty", chapters=[Chapter("c1", "Blank", "<p>   </p>")])

    with pytest.raises(ChunkingProducedNothingError) as exc_info:
        await retriever.index_document(book)

    assert exc_info.value.code == "NO_CHUNKS"
    assert (await retriever.status("empty")).state is IndexState.NOT_INDEXED


@pytest.mark.asyncio
async def test_storage_error_resets_status(store, monkeypatch):
    retriever = _retriever(store)

    async def _fail(chunks):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "save_chunks", _fail)
    with pytest.raises(RuntimeError, match="disk full"):
        await retriever.index_document(_fruit_book(), _SMALL)
    assert retriever.statuses.get("book-1").state is IndexState.NOT_INDEXED


@pytest.mark.asyncio
async def test_worker_unavailable_falls_back_inline(store):
    scheduler = WorkerScheduler(mp_context=_BrokenContext())
    retriever = _retriever(store, scheduler=scheduler)

    await retriever.index_document(_fruit_book(), _SMALL)

    assert len(await store.get_chunks_by_document("book-1")) == 2
    await retriever.close()


@pytest.mark.asyncio
async def test_worker_process_indexing(store):
    retriever = _retriever(store, scheduler=WorkerScheduler())
    try:
        await retriever.index_document(_scope_book(), _SMALL)
        results = await retriever.search("desert", "book-2")
    finally:
        await retriever.close()
    assert results[0].chunk.chapter_id == "ch-2"


@pytest.mark.asyncio
async def test_cancel_stops_listening_to_job(store, fake_provider):
    scheduler = _GatedScheduler()
    retriever = _retriever(store, fake_provider, scheduler=scheduler, chunk_batch_size=1)
    book = _fruit_book()

    task = asyncio.create_task(retriever.index_document(book, _SMALL))
    await scheduler.first_sent.wait()
    retriever.cancel(book.id)
    scheduler.gate.set()
    await task

    assert await store.get_chunks_by_document(book.id) == []
    assert retriever.backfill.pending == ()
    assert (await retriever.status(book.id)).state is IndexState.NOT_INDEXED


@pytest.mark.asyncio
async def test_index_after_cancel_chunks_every_chapter(store):
    scheduler = _GatedScheduler()
    retriever = _retriever(store, scheduler=scheduler, chunk_batch_size=1)
    book = _fruit_book()

    task = asyncio.create_task(retriever.index_document(book, _SMALL))
    await scheduler.first_sent.wait()
    retriever.cancel(book.id)
    scheduler.gate.set()
    await task

    await retriever.index_document(book, _SMALL)

    chunks = await store.get_chunks_by_document(book.id)
    assert [c.chapter_id for c in chunks] == ["ch-1", "ch-2"]
    status = await retriever.status(book.id)
    assert status.state is IndexState.CHUNKED_LEXICAL_READY
    assert status.chunk_count == 2


@pytest.mark.asyncio
async def test_failed_save_leaves_no_partial_chunks(store, monkeypatch):
    retriever = _retriever(store, chunk_batch_size=1)
    book = _fruit_book()
    save = store.save_chunks
    calls: list[int] = []

    async def _fail_second(chunks):
        calls.append(len(chunks))
        if len(calls) == 2:
            raise RuntimeError("disk full")
        await save(chunks)

    monkeypatch.setattr(store, "save_chunks", _fail_second)
    with pytest.raises(RuntimeError, match="disk full"):
        await retriever.index_document(book, _SMALL)

    assert await store.get_chunks_by_document(book.id) == []
    assert (await retriever.status(book.id)).state is IndexState.NOT_INDEXED

    await retriever.index_document(book, _SMALL)
    chunks = await store.get_chunks_by_document(book.id)
    assert [c.chapter_id for c in chunks] == ["ch-1", "ch-2"]


@pytest.mark.asyncio
async def test_reindex_during_job_waits_for_old_job(store):
    scheduler = _GatedScheduler()
    retriever = _retriever(store, scheduler=scheduler, chunk_batch_size=1)
    book = _fruit_book()

    first = asyncio.create_task(retriever.index_document(book, _SMALL))
    await scheduler.first_sent.wait()
    second = asyncio.create_task(retriever.reindex_document(book, _SMALL))
    await asyncio.sleep(0)
    scheduler.gate.set()
    await asyncio.gather(first, second)

    chunks = await store.get_chunks_by_document(book.id)
    assert [c.chapter_id for c in chunks] == ["ch-1", "ch-2"]
    assert (await retriever.status(book.id)).state is IndexState.CHUNKED_LEXICAL_READY


# ------------------------------------------------------------------
# Lifecycle and accessors
# ------------------------------------------------------------------

@pytest.mark.asyncio
async def test_remove_document(store):
    retriever = _retriever(store)
    await retriever.index_document(_fruit_book(), _SMALL)
    await retriever.remove_document("book-1")

    assert not await store.has_chunks("book-1")
    assert (await retriever.status("book-1")).state is IndexState.NOT_INDEXED


@pytest.mark.asyncio
async def test_status_derived_from_store(store, fake_provider):
    first = _retriever(store, fake_provider)
    await first.index_document(_fruit_book(), _SMALL)
    await first.index_document(_scope_book(), IndexOptions(_SMALL.chunking, generate_embeddings=False))
    await first.backfill.join()

    fresh = _retriever(store)
    assert (await fresh.status("book-1")).state is IndexState.FULLY_INDEXED
    lexical = await fresh.status("book-2")
    assert lexical.state is IndexState.CHUNKED_LEXICAL_READY
    assert lexical.chunk_count == 2
    assert (await fresh.status("nope")).state is IndexState.NOT_INDEXED


@pytest.mark.asyncio
async def test_status_requires_embeddings_from_current_model(store, fake_provider):
    first = _retriever(store, fake_provider)
    await first.index_document(_fruit_book(), _SMALL)
    await first.backfill.join()

    other = type(fake_provider)(model="another-embedder")
    switched = _retriever(store, other)
    status = await switched.status("book-1")

    assert status.state is IndexState.CHUNKED_LEXICAL_READY
    assert status.chunk_count == 2


@pytest.mark.asyncio
async def test_get_chunk_by_id(store):
    retriever = _retriever(store)
    await retriever.index_document(_fruit_book(), _SMALL)
    chunk = await retriever.get_chunk_by_id("book-1-ch-2-chunk-1")
    assert chunk is not None
    assert chunk.chapter_title == "Chapter Two"
    assert await retriever.get_chunk_by_id("missing") is None


def test_chunk_uses_default_options(store):
    retriever = Retriever(
        store, chunking=ChunkingOptions(target_tokens=3, max_tokens=8, overlap_tokens=0)
    )
    chunks = retriever.chunk("Paragraph one.\n\nParagraph two.\n\nParagraph three.")
    assert "Paragraph one." in chunks[0].text
    assert "Paragraph two." not in chunks[0].text


def test_from_config_wires_settings(store):
    cfg = MarginaliaConfig()
    cfg.embedding.provider = "none"
    cfg.retrieval.top_k = 3
    cfg.chunking.target_tokens = 50
    cfg.chunking.max_tokens = 60
    cfg.chunking.overlap_tokens = 5

    retriever = Retriever.from_config(cfg, store, use_worker=False)

    assert isinstance(retriever._scheduler, InlineScheduler)
    assert retriever._top_k == 3
    assert retriever._chunking == ChunkingOptions(50, 60, 5)


@pytest.mark.asyncio
async def test_close_is_safe_when_idle(store):
    retriever = _retriever(store)
    await retriever.close()
    await retriever.close()
