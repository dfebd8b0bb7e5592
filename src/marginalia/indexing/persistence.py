"""Ordered persistence of chunk batches as they stream in from a job.

Batches are written in submission order by a single consumer task, with at
most one ``save_chunks`` call in flight. The first storage error stops
further writes and is re-raised from ``drain()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from marginalia.db.models import Chunk
from marginalia.db.store import ChunkStore

logger = logging.getLogger(__name__)


class BatchPersister:
    def __init__(self, store: ChunkStore) -> None:
        self._store = store
        self._queue: asyncio.Queue[list[Chunk] | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._error: BaseException | None = None
        self.saved = 0

    @property
    def error(self) -> BaseException | None:
        return self._error

    def submit(self, chunks: Sequence[Chunk]) -> None:
        """Queue *chunks* for saving. Must be called from the running loop."""
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._consume())
        self._queue.put_nowait(list(chunks))

    def discard_pending(self) -> int:
        """Drop queued batches that have not started saving; return how many."""
        dropped = 0
        while True:
            try:
                batch = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            self._queue.task_done()
            if batch is not None:
                dropped += 1

    async def drain(self) -> None:
        """Wait for every submitted batch, then re-raise the first storage error."""
        task, self._task = self._task, None
        if task is not None:
            self._queue.put_nowait(None)
            await task
        if self._error is not None:
            raise self._error

    async def _consume(self) -> None:
        while True:
            batch = await self._queue.get()
            try:
                if batch is None:
                    return
                if self._error is None:
                    await self._store.save_chunks(batch)
                    self.saved += len(batch)
                    logger.debug("Persisted %d chunks (%d total)", len(batch), self.saved)
            except Exception as exc:
                logger.debug("Chunk batch save failed: %s", exc)
                self._error = exc
            finally:
                self._queue.task_done()
