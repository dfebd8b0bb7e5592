"""Async chunk store gateway.

``ChunkStore`` is the contract the retrieval core depends on. Every call is
treated as atomic and ``save_chunks`` as an idempotent upsert keyed by document
and chunk id (re-saving a chunk with an embedding replaces the stored row). Storage
errors propagate unchanged.

``SqliteChunkStore`` implements the contract over ``ChunkRepository``; the
blocking sqlite calls run in a worker thread via ``asyncio.to_thread`` and are
serialised by a lock so one connection can be shared safely.
"""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from collections.abc import Sequence
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable

from marginalia.db.models import Chunk, DocumentStats
from marginalia.db.repository import ChunkRepository

_T = TypeVar("_T")


@runtime_checkable
class ChunkStore(Protocol):
    async def save_chunks(self, chunks: Sequence[Chunk]) -> None: ...

    async def get_chunks_by_document(self, document_id: str) -> list[Chunk]: ...

    async def get_chunks_by_document_chapter(
        self, document_id: str, chapter_id: str
    ) -> list[Chunk]: ...

    async def get_chunks_by_ids(self, ids: Sequence[str]) -> list[Chunk]: ...

    async def has_chunks(self, document_id: str) -> bool: ...

    async def delete_chunks_by_document(self, document_id: str) -> None: ...

    async def list_documents(self) -> list[DocumentStats]: ...


class SqliteChunkStore:
    """ChunkStore backed by an open sqlite3 connection.

    Args:
        conn: Connection from ``marginalia.db.connection.Database.connect()``
            with the schema initialised.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._repo = ChunkRepository(conn)
        self._lock = threading.Lock()

    @property
    def repository(self) -> ChunkRepository:
        return self._repo

    async def save_chunks(self, chunks: Sequence[Chunk]) -> None:
        await self._call(self._repo.save_chunks, list(chunks))

    async def get_chunks_by_document(self, document_id: str) -> list[Chunk]:
        return await self._call(self._repo.get_chunks_by_document, document_id)

    async def get_chunks_by_document_chapter(
        self, document_id: str, chapter_id: str
    ) -> list[Chunk]:
        return await self._call(
            self._repo.get_chunks_by_document_chapter, document_id, chapter_id
        )

    async def get_chunks_by_ids(self, ids: Sequence[str]) -> list[Chunk]:
        return await self._call(self._repo.get_chunks_by_ids, list(ids))

    async def has_chunks(self, document_id: str) -> bool:
        return await self._call(self._repo.has_chunks, document_id)

    async def delete_chunks_by_document(self, document_id: str) -> None:
        await self._call(self._repo.delete_chunks_by_document, document_id)

    async def list_documents(self) -> list[DocumentStats]:
        return await self._call(self._repo.list_documents)

    async def _call(self, fn: Callable[..., _T], *args: Any) -> _T:
        def locked() -> _T:
            with self._lock:
                return fn(*args)

        return await asyncio.to_thread(locked)
