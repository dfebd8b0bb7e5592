"""Repository for all chunk table operations.

Single synchronous interface over the ``chunks`` table: bulk upserts, lookups
by document, by document+chapter and by id, existence checks, bulk delete and
per-document statistics. Embeddings live in the same row as float32 blobs.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Sequence

from marginalia.db.models import Chunk, DocumentStats
from marginalia.db.vectors import deserialize_embedding, serialize_embedding

_CHUNK_COLUMNS = (
    "id, document_id, chapter_id, chapter_title, chunk_index, text, "
    "offset_start, offset_end, embedding, embedding_model"
)


class ChunkRepository:
    """Data access layer for persisted chunks.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema initialised
                (see marginalia.db.migrations.initialize).
        """
        self._conn = conn

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def save_chunks(self, chunks: Sequence[Chunk]) -> None:
        """Insert or fully replace *chunks*, keyed by (document_id, id), in one transaction."""
        if not chunks:
            return
        rows = [
            (
                c.id,
                c.document_id,
                c.chapter_id,
                c.chapter_title,
                c.composite_key,
                c.chunk_index,
                c.text,
                c.offset_start,
                c.offset_end,
                serialize_embedding(c.embedding) if c.embedding else None,
                c.embedding_model if c.embedding else None,
            )
            for c in chunks
        ]
        with self._conn:
            self._conn.executemany(
                """
                INSERT INTO chunks (
                    id, document_id, chapter_id, chapter_title, composite_key,
                    chunk_index, text, offset_start, offset_end, embedding, embedding_model
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(document_id, id) DO UPDATE SET
                    chapter_id = excluded.chapter_id,
                    chapter_title = excluded.chapter_title,
                    composite_key = excluded.composite_key,
                    chunk_index = excluded.chunk_index,
                    text = excluded.text,
                    offset_start = excluded.offset_start,
                    offset_end = excluded.offset_end,
                    embedding = excluded.embedding,
                    embedding_model = excluded.embedding_model
                """,
                rows,
            )

    def delete_chunks_by_document(self, document_id: str) -> int:
        """Delete every chunk of *document_id*. Returns the number of rows removed."""
        with self._conn:
            cur = self._conn.execute(
                "DELETE FROM chunks WHERE document_id = ?", (document_id,)
            )
        return cur.rowcount

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_chunks_by_document(self, document_id: str) -> list[Chunk]:
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE document_id = ? ORDER BY chunk_index",
            (document_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def get_chunks_by_document_chapter(self, document_id: str, chapter_id: str) -> list[Chunk]:
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks "
            "WHERE document_id = ? AND chapter_id = ? ORDER BY chunk_index",
            (document_id, chapter_id),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def get_chunks_by_ids(self, ids: Sequence[str]) -> list[Chunk]:
        """Return chunks for *ids* in request order; unknown ids are skipped.

        Ids are unique per document. If two documents share an id, the row of
        the lowest document id is returned.
        """
        if not ids:
            return []
        placeholders = ",".join("?" * len(ids))
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders})"
            " ORDER BY document_id",  # noqa: S608
            list(ids),
        ).fetchall()
        by_id: dict[str, Chunk] = {}
        for r in rows:
            by_id.setdefault(r["id"], _row_to_chunk(r))
        return [by_id[i] for i in ids if i in by_id]

    def has_chunks(self, document_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM chunks WHERE document_id = ? LIMIT 1", (document_id,)
        ).fetchone()
        return row is not None

    def count_chunks(self, document_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
        ).fetchone()[0]

    def list_documents(self) -> list[DocumentStats]:
        """Return chunk statistics for every document that has chunks."""
        rows = self._conn.execute(
            """
            SELECT document_id,
                   COUNT(*) AS chunk_count,
                   COUNT(embedding) AS embedded_count,
                   COUNT(DISTINCT chapter_id) AS chapter_count
            FROM chunks
            GROUP BY document_id
            ORDER BY document_id
            """
        ).fetchall()
        return [
            DocumentStats(
                document_id=r["document_id"],
                chunk_count=r["chunk_count"],
                embedded_count=r["embedded_count"],
                chapter_count=r["chapter_count"],
            )
            for r in rows
        ]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        chapter_id=row["chapter_id"],
        chapter_title=row["chapter_title"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        offset_start=row["offset_start"],
        offset_end=row["offset_end"],
        embedding=deserialize_embedding(row["embedding"]),
        embedding_model=row["embedding_model"],
    )
