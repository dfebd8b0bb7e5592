"""Background embedding backfill.

Documents become searchable lexically as soon as their chunks are stored;
vectors are filled in afterwards, one document at a time, in enqueue order.
Only chunks without an embedding from the current provider's model are
embedded, so an interrupted backfill resumes where it stopped.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace

from marginalia.db.models import Chunk
from marginalia.db.store import ChunkStore
from marginalia.indexing.status import IndexState, StatusRegistry
from marginalia.ingest.embeddings import EmbeddingProvider, EmbeddingProviderLoader

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_BATCH_SIZE = 8


@dataclass(eq=False)
class _Ticket:
    """One enqueue of a document; a re-enqueue after cancel gets a new ticket."""

    batch_size: int


def missing_embeddings(chunks: list[Chunk], model: str) -> list[Chunk]:
    return [c for c in chunks if c.embedding is None or c.embedding_model != model]


class EmbeddingBackfillQueue:
    """Insertion-ordered set of documents waiting for embeddings.

    Args:
        store: Chunk store the vectors are written back to.
        loader: Source of the (optional) embedding provider.
        status: Registry updated with backfill progress.
        batch_size: Default number of chunks embedded per provider call.
        yield_delay: Seconds slept between batches.
    """

    def __init__(
        self,
        store: ChunkStore,
        loader: EmbeddingProviderLoader,
        status: StatusRegistry | None = None,
        batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE,
        yield_delay: float = 0.0,
    ) -> None:
        self._store = store
        self._loader = loader
        self._status = status or StatusRegistry()
        self._batch_size = max(1, batch_size)
        self._yield_delay = yield_delay
        self._pending: dict[str, _Ticket] = {}
        self._task: asyncio.Task[None] | None = None
        self._active: tuple[str, asyncio.Event] | None = None

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(self._pending)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def enqueue(self, document_id: str, batch_size: int | None = None) -> None:
        """Add *document_id* (once) and make sure the drain task is running."""
        if document_id not in self._pending:
            self._pending[document_id] = _Ticket(max(1, batch_size or self._batch_size))
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._drain())

    def cancel(self, document_id: str) -> bool:
        """Remove *document_id*; an in-flight backfill stops before its next batch."""
        return self._pending.pop(document_id, None) is not None

    async def settle(self, document_id: str) -> None:
        """Wait for an in-flight backfill of *document_id* to stop writing."""
        active = self._active
        if active is not None and active[0] == document_id:
            await active[1].wait()

    async def join(self) -> None:
        """Wait until the pending set is empty and the drain task has finished."""
        while self.running:
            await asyncio.shield(self._task)

    async def close(self) -> None:
        self._pending.clear()
        await self.join()

    async def _drain(self) -> None:
        while self._pending:
            document_id, ticket = next(iter(self._pending.items()))
            done = asyncio.Event()
            self._active = (document_id, done)
            try:
                await self._backfill(document_id, ticket)
            except Exception:
                logger.exception("Embedding backfill failed for %s", document_id)
            finally:
                if self._pending.get(document_id) is ticket:
                    del self._pending[document_id]
                self._active = None
                done.set()

    async def _backfill(self, document_id: str, ticket: _Ticket) -> None:
        provider = await self._loader.get()
        if provider is None:
            logger.debug("No embedding provider; %s stays lexical-only", document_id)
            return

        chunks = await self._store.get_chunks_by_document(document_id)
        if not chunks:
            return
        missing = missing_embeddings(chunks, provider.model)
        if not missing:
            self._status.update(
                document_id, IndexState.FULLY_INDEXED, progress=100, chunk_count=len(chunks)
            )
            return

        logger.info(
            "Embedding %d of %d chunks for %s with %s",
            len(missing),
            len(chunks),
            document_id,
            provider.model,
        )
        done = len(chunks) - len(missing)
        self._status.update(
            document_id,
            IndexState.EMBEDDING_BACKFILL,
            progress=round(done / len(chunks) * 100),
            chunk_count=len(chunks),
        )

        for start in range(0, len(missing), ticket.batch_size):
            if not self._current(document_id, ticket):
                logger.info("Embedding backfill for %s cancelled", document_id)
                return
            batch = missing[start : start + ticket.batch_size]
            embedded = await self._embed_batch(provider, batch)
            if not self._current(document_id, ticket):
                logger.info("Embedding backfill for %s cancelled", document_id)
                return
            await self._store.save_chunks(embedded)
            done += len(batch)
            self._status.update(document_id, progress=round(done / len(chunks) * 100))
            logger.debug("Embedded %d/%d chunks for %s", done, len(chunks), document_id)
            await asyncio.sleep(self._yield_delay)

        self._status.update(document_id, IndexState.FULLY_INDEXED, progress=100)
        logger.info("Embedding backfill complete for %s", document_id)

    def _current(self, document_id: str, ticket: _Ticket) -> bool:
        return self._pending.get(document_id) is ticket

    async def _embed_batch(self, provider: EmbeddingProvider, batch: list[Chunk]) -> list[Chunk]:
        vectors = await asyncio.to_thread(provider.embed, [c.text for c in batch])
        if len(vectors) != len(batch):
            raise RuntimeError(
                f"provider returned {len(vectors)} vectors for {len(batch)} texts"
            )
        return [
            replace(chunk, embedding=[float(x) for x in vector], embedding_model=provider.model)
            for chunk, vector in zip(batch, vectors)
        ]
