"""Retrieval service: the application-facing entry point.

``Retriever`` owns the indexing scheduler, the embedding backfill queue and
the per-document status registry, and answers searches over one document
(or one chapter of it):

    chunk store ──► BM25 ranking ─────────────┐
                └─► embedding ranking (opt.) ─┴─► RRF ──► top_k

Indexing streams chunk batches from the scheduler into the store in order,
marks the document ``chunked_lexical_ready`` (lexically searchable) and then
queues embedding backfill. Search degrades to BM25 whenever the provider is
missing or some candidates have no embedding from its model yet.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum

from marginalia.config import MarginaliaConfig
from marginalia.db.models import Chunk, Document, RawChunk
from marginalia.db.store import ChunkStore
from marginalia.errors import ChunkingProducedNothingError, NotIndexedError
from marginalia.indexing.backfill import (
    DEFAULT_EMBEDDING_BATCH_SIZE,
    EmbeddingBackfillQueue,
    missing_embeddings,
)
from marginalia.indexing.persistence import BatchPersister
from marginalia.indexing.protocol import (
    DEFAULT_CHUNK_BATCH_SIZE,
    ChunkBatch,
    Complete,
    IndexRequest,
    Progress,
)
from marginalia.indexing.scheduler import (
    InlineScheduler,
    Scheduler,
    WorkerUnavailableError,
    select_scheduler,
)
from marginalia.indexing.status import IndexState, IndexStatus, StatusRegistry
from marginalia.ingest.chunker import ChunkingOptions, chunk_text
from marginalia.ingest.embeddings import EmbeddingProviderLoader, provider_factory
from marginalia.rag.bm25 import DEFAULT_B, DEFAULT_K1
from marginalia.rag.ranking import (
    DEFAULT_RRF_K,
    SearchResult,
    rank_by_bm25,
    rank_by_embeddings,
    reciprocal_rank_fusion,
)

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 12


class SearchScope(str, Enum):
    WHOLE_DOCUMENT = "whole_document"
    CHAPTER = "chapter"


@dataclass
class SearchOptions:
    scope: SearchScope = SearchScope.WHOLE_DOCUMENT
    chapter_id: str | None = None
    top_k: int = DEFAULT_TOP_K


@dataclass
class IndexOptions:
    """Options for one indexing run.

    Attributes:
        chunking: Chunk sizing.
        embedding_batch_size: Chunks per provider call during backfill.
        generate_embeddings: Queue embedding backfill once chunks are stored.
    """

    chunking: ChunkingOptions = field(default_factory=ChunkingOptions)
    embedding_batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE
    generate_embeddings: bool = True


class Retriever:
    """Index documents into a chunk store and search them.

    Args:
        store: Chunk store gateway.
        scheduler: Where chunking runs. Defaults to inline chunking.
        embeddings: Loader for the optional embedding provider. Defaults to
            no provider (lexical search only).
        backfill: Embedding backfill queue; built from *store* and
            *embeddings* when omitted.
        status: Status registry shared with *backfill*.
        chunking: Default chunk sizing for ``chunk()`` and ``index_document``.
        chunk_batch_size: Chunks per streamed batch.
        top_k: Default result count when ``search`` gets no options.
        rrf_k: Reciprocal rank fusion constant.
        bm25_k1: BM25 term-frequency saturation.
        bm25_b: BM25 length normalisation.
        yield_every: Chapters between yields when chunking inline.
    """

    def __init__(
        self,
        store: ChunkStore,
        *,
        scheduler: Scheduler | None = None,
        embeddings: EmbeddingProviderLoader | None = None,
        backfill: EmbeddingBackfillQueue | None = None,
        status: StatusRegistry | None = None,
        chunking: ChunkingOptions | None = None,
        chunk_batch_size: int = DEFAULT_CHUNK_BATCH_SIZE,
        top_k: int = DEFAULT_TOP_K,
        rrf_k: int = DEFAULT_RRF_K,
        bm25_k1: float = DEFAULT_K1,
        bm25_b: float = DEFAULT_B,
        yield_every: int = 3,
    ) -> None:
        self._store = store
        self._scheduler = scheduler or InlineScheduler(yield_every=yield_every)
        self._fallback = InlineScheduler(
            yield_every=yield_every, structural=self._scheduler.structural
        )
        self._embeddings = embeddings or EmbeddingProviderLoader(None)
        self.statuses = status or StatusRegistry()
        self._backfill = backfill or EmbeddingBackfillQueue(
            store, self._embeddings, self.statuses
        )
        self._chunking = chunking or ChunkingOptions()
        self._chunk_batch_size = chunk_batch_size
        self._top_k = top_k
        self._rrf_k = rrf_k
        self._bm25_k1 = bm25_k1
        self._bm25_b = bm25_b
        self._active_jobs: dict[str, str] = {}
        self._job_done: dict[str, asyncio.Event] = {}

    @classmethod
    def from_config(
        cls,
        cfg: MarginaliaConfig,
        store: ChunkStore,
        *,
        use_worker: bool | None = None,
    ) -> Retriever:
        """Build a Retriever wired from a loaded configuration."""
        yield_every = cfg.indexing.yield_every_chapters
        scheduler = select_scheduler(
            cfg.indexing.use_worker if use_worker is None else use_worker,
            yield_every=yield_every,
        )
        factory = (
            provider_factory(cfg.embedding.provider, cfg.embedding.model or None)
            if cfg.embedding.enabled
            else None
        )
        embeddings = EmbeddingProviderLoader(factory)
        status = StatusRegistry()
        backfill = EmbeddingBackfillQueue(
            store,
            embeddings,
            status,
            batch_size=cfg.embedding.batch_size,
            yield_delay=cfg.indexing.backfill_yield_seconds,
        )
        return cls(
            store,
            scheduler=scheduler,
            embeddings=embeddings,
            backfill=backfill,
            status=status,
            chunking=cfg.chunking.options(),
            chunk_batch_size=cfg.indexing.chunk_batch_size,
            top_k=cfg.retrieval.top_k,
            rrf_k=cfg.retrieval.rrf_k,
            bm25_k1=cfg.retrieval.bm25_k1,
            bm25_b=cfg.retrieval.bm25_b,
            yield_every=yield_every,
        )

    @property
    def backfill(self) -> EmbeddingBackfillQueue:
        return self._backfill

    # ------------------------------------------------------------------
    # Chunking and indexing
    # ------------------------------------------------------------------

    def chunk(self, text: str, options: ChunkingOptions | None = None) -> list[RawChunk]:
        return chunk_text(text, options or self._chunking)

    async def index_document(self, document: Document, options: IndexOptions | None = None) -> None:
        """Chunk *document* into the store and queue embedding backfill.

        A document that already has chunks is not re-chunked; only backfill
        is re-queued.

        Raises:
            ChunkingProducedNothingError: If the run completed with no chunks.
        """
        opts = options or IndexOptions(chunking=self._chunking)

        running = self._job_done.get(document.id)
        if running is not None:
            await running.wait()

        if await self._store.has_chunks(document.id):
            logger.info("%s already chunked; skipping to embedding backfill", document.id)
            if self.statuses.get(document.id).state is IndexState.NOT_INDEXED:
                stored = await self._store.get_chunks_by_document(document.id)
                self.statuses.update(
                    document.id,
                    IndexState.CHUNKED_LEXICAL_READY,
                    progress=100,
                    chunk_count=len(stored),
                )
            if opts.generate_embeddings:
                self._backfill.enqueue(document.id, opts.embedding_batch_size)
            return

        job_id = uuid.uuid4().hex
        self._active_jobs[document.id] = job_id
        done = self._job_done[document.id] = asyncio.Event()
        self.statuses.update(document.id, IndexState.CHUNKING, progress=0, chunk_count=0)
        request = IndexRequest(job_id, document, opts.chunking, self._chunk_batch_size)
        logger.info(
            "Indexing %s (%d chapters) job=%s via %s",
            document.id,
            len(document.chapters),
            job_id,
            self._scheduler.name,
        )

        # A run that ends without Complete leaves no chunks behind.
        try:
            try:
                chunk_count = await self._run_job(request, self._scheduler)
            except WorkerUnavailableError as exc:
                logger.warning("Indexing worker unavailable (%s); chunking inline", exc)
                chunk_count = await self._run_job(request, self._fallback)
            if chunk_count is None:
                logger.info("Indexing job %s for %s was cancelled", job_id, document.id)
                await self._discard_partial(document.id)
        except Exception:
            await self._discard_partial(document.id)
            raise
        except BaseException:
            self.statuses.update(document.id, IndexState.NOT_INDEXED, progress=0)
            raise
        finally:
            if self._active_jobs.get(document.id) == job_id:
                del self._active_jobs[document.id]
            if self._job_done.get(document.id) is done:
                del self._job_done[document.id]
            done.set()

        if chunk_count is None:
            return
        if chunk_count == 0:
            self.statuses.update(document.id, IndexState.NOT_INDEXED, progress=0)
            raise ChunkingProducedNothingError("No chunks generated for document.", document.id)

        self.statuses.update(
            document.id, IndexState.CHUNKED_LEXICAL_READY, progress=100, chunk_count=chunk_count
        )
        logger.info("Indexed %s: %d chunks", document.id, chunk_count)
        if opts.generate_embeddings:
            self._backfill.enqueue(document.id, opts.embedding_batch_size)

    async def _run_job(self, request: IndexRequest, scheduler: Scheduler) -> int | None:
        """Stream *request* through *scheduler* into the store.

        Returns the number of chunks persisted, or None if the job was
        cancelled before ``Complete`` arrived.
        """
        document_id = request.document.id
        persister = BatchPersister(self._store)
        chunk_count = 0
        completed = False

        try:
            async with aclosing(scheduler.run(request)) as messages:
                async for message in messages:
                    if self._active_jobs.get(document_id) != request.job_id:
                        persister.discard_pending()
                        break
                    if isinstance(message, ChunkBatch):
                        persister.submit(message.chunks)
                        chunk_count += len(message.chunks)
                        self.statuses.update(
                            document_id,
                            progress=_percent(message.chapter_index, message.total_chapters),
                            chunk_count=chunk_count,
                        )
                    elif isinstance(message, Progress):
                        self.statuses.update(
                            document_id, progress=_percent(message.current, message.total)
                        )
                    elif isinstance(message, Complete):
                        if message.chunk_count != chunk_count:
                            logger.warning(
                                "Job %s reported %d chunks but streamed %d",
                                request.job_id,
                                message.chunk_count,
                                chunk_count,
                            )
                        completed = True
                    if persister.error is not None:
                        break
        finally:
            await persister.drain()

        return chunk_count if completed else None

    async def _discard_partial(self, document_id: str) -> None:
        """Delete whatever an unfinished run stored and reset the status."""
        try:
            await self._store.delete_chunks_by_document(document_id)
        except Exception:
            logger.exception("Could not remove partial chunks of %s", document_id)
        self.statuses.forget(document_id)

    async def reindex_document(
        self, document: Document, options: IndexOptions | None = None
    ) -> None:
        """Drop every stored chunk of *document* and index it again."""
        self.cancel(document.id)
        await self._wait_for_job(document.id)
        await self._store.delete_chunks_by_document(document.id)
        self.statuses.forget(document.id)
        await self.index_document(document, options)

    async def remove_document(self, document_id: str) -> None:
        self.cancel(document_id)
        await self._wait_for_job(document_id)
        await self._store.delete_chunks_by_document(document_id)
        self.statuses.forget(document_id)
        logger.info("Removed %s", document_id)

    def cancel(self, document_id: str) -> None:
        """Stop listening to the active job and drop pending backfill for *document_id*."""
        job_id = self._active_jobs.pop(document_id, None)
        if job_id is not None:
            logger.info("Cancelled indexing job %s for %s", job_id, document_id)
        self._backfill.cancel(document_id)

    async def _wait_for_job(self, document_id: str) -> None:
        """Wait until a cancelled job for *document_id* has stopped writing."""
        done = self._job_done.get(document_id)
        if done is not None:
            await done.wait()
        await self._backfill.settle(document_id)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self, query: str, document_id: str, options: SearchOptions | None = None
    ) -> list[SearchResult]:
        """Return the best ``top_k`` chunks of the scope for *query*.

        Raises:
            NotIndexedError: If the scope has no chunks.
        """
        opts = options or SearchOptions(top_k=self._top_k)
        chunks = await self._candidates(document_id, opts)
        if not chunks:
            raise NotIndexedError("Document is not indexed for retrieval.", document_id)

        bm25_ranking = rank_by_bm25(query, chunks, k1=self._bm25_k1, b=self._bm25_b)

        provider = await self._embeddings.get()
        if provider is None:
            return bm25_ranking[: opts.top_k]

        if missing_embeddings(chunks, provider.model):
            self._backfill.enqueue(document_id)
            return bm25_ranking[: opts.top_k]

        try:
            vectors = await asyncio.to_thread(provider.embed, [query])
        except Exception as exc:
            logger.warning("Query embedding failed (%s); falling back to BM25", exc)
            return bm25_ranking[: opts.top_k]

        fused = reciprocal_rank_fusion(
            [rank_by_embeddings(vectors[0], chunks), bm25_ranking], k=self._rrf_k
        )
        return fused[: opts.top_k]

    async def _candidates(self, document_id: str, opts: SearchOptions) -> list[Chunk]:
        if opts.scope is SearchScope.CHAPTER:
            if not opts.chapter_id:
                return []
            return await self._store.get_chunks_by_document_chapter(document_id, opts.chapter_id)
        return await self._store.get_chunks_by_document(document_id)

    async def get_chunk_by_id(self, chunk_id: str) -> Chunk | None:
        chunks = await self._store.get_chunks_by_ids([chunk_id])
        return chunks[0] if chunks else None

    # ------------------------------------------------------------------
    # Status and lifecycle
    # ------------------------------------------------------------------

    async def status(self, document_id: str) -> IndexStatus:
        """Return the indexing status, deriving it from the store if unknown here."""
        status = self.statuses.get(document_id)
        if status.state is not IndexState.NOT_INDEXED:
            return status

        chunks = await self._store.get_chunks_by_document(document_id)
        if not chunks:
            return status
        provider = await self._embeddings.get()
        if provider is not None:
            embedded = not missing_embeddings(chunks, provider.model)
        else:
            embedded = all(c.embedding is not None for c in chunks)
        if embedded:
            return IndexStatus(document_id, IndexState.FULLY_INDEXED, 100, len(chunks))
        return IndexStatus(document_id, IndexState.CHUNKED_LEXICAL_READY, 100, len(chunks))

    async def close(self) -> None:
        """Cancel active jobs and backfill, then stop the scheduler."""
        for document_id in list(self._active_jobs):
            self.cancel(document_id)
        await self._backfill.close()
        await self._scheduler.close()


def _percent(current: int, total: int) -> int:
    if total <= 0:
        return 100
    return round(current / total * 100)
