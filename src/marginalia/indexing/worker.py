"""Indexing worker body.

``iter_index_messages`` is the single implementation of the chunk-and-stream
loop. The worker process (``worker_main``) and the inline scheduler both
drive it, so chunk boundaries and ids are identical on either path.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from typing import Any, Protocol

from marginalia.db.models import Chunk
from marginalia.indexing.protocol import (
    ChunkBatch,
    Complete,
    IndexRequest,
    Progress,
    ProtocolError,
    WorkerResponse,
    parse_request,
)
from marginalia.ingest.chunker import iter_chapter_chunks

logger = logging.getLogger(__name__)


class _Queue(Protocol):
    def get(self) -> Any: ...

    def put(self, item: Any) -> None: ...


def iter_index_messages(request: IndexRequest, structural: bool = True) -> Iterator[WorkerResponse]:
    """Chunk every chapter of the request and yield protocol messages.

    - ``ChunkBatch`` each time ``chunk_batch_size`` chunks have accumulated
      (``chapter_index`` is the 1-based chapter that filled the batch);
    - ``Progress`` once per chapter, whatever the batch boundaries;
    - a trailing partial ``ChunkBatch`` with ``chapter_index == total``;
    - ``Complete`` with the total chunk count, last.
    """
    total = len(request.document.chapters)
    batch: list[Chunk] = []
    chunk_count = 0

    for chapter_index, chunks in iter_chapter_chunks(
        request.document, request.options, structural=structural
    ):
        for chunk in chunks:
            batch.append(chunk)
            chunk_count += 1
            if len(batch) >= request.chunk_batch_size:
                yield ChunkBatch(request.job_id, batch, chapter_index + 1, total)
                batch = []
        yield Progress(request.job_id, chapter_index + 1, total)

    if batch:
        yield ChunkBatch(request.job_id, batch, total, total)

    yield Complete(request.job_id, chunk_count)


def worker_main(requests: _Queue, responses: _Queue, structural: bool = True) -> None:
    """Worker process entry point.

    Reads request dicts from *requests* until ``None`` arrives and answers
    each with response dicts on *responses*. Malformed requests are skipped.
    """
    for raw in iter(requests.get, None):
        try:
            request = parse_request(raw)
        except ProtocolError as exc:
            logger.warning("Ignoring malformed index request: %s", exc)
            continue
        for message in iter_index_messages(request, structural=structural):
            responses.put(message.to_dict())
