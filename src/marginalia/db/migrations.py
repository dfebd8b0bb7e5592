"""Forward-only migration runner for the chunk store schema."""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS chunks (
    id              TEXT PRIMARY KEY,
    document_id     TEXT NOT NULL,
    chapter_id      TEXT NOT NULL,
    chapter_title   TEXT NOT NULL DEFAULT '',
    composite_key   TEXT NOT NULL,
    chunk_index     INTEGER NOT NULL,
    text            TEXT NOT NULL,
    offset_start    INTEGER NOT NULL DEFAULT 0,
    offset_end      INTEGER NOT NULL DEFAULT 0,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks (document_id, chunk_index);
CREATE INDEX IF NOT EXISTS idx_chunks_composite ON chunks (composite_key, chunk_index);
"""

# Embeddings are float32 blobs (sqlite-vec serialisation) stored beside the chunk.
_V2_SQL = """
ALTER TABLE chunks ADD COLUMN embedding BLOB;
ALTER TABLE chunks ADD COLUMN embedding_model TEXT;
"""

# Chunk ids are only unique within a document; SQLite cannot alter a primary key,
# so the table is rebuilt. Chapter lookups filter on (document_id, chapter_id).
_V3_SQL = """
CREATE TABLE chunks_v3 (
    id              TEXT NOT NULL,
    document_id     TEXT NOT NULL,
    chapter_id      TEXT NOT NULL,
    chapter_title   TEXT NOT NULL DEFAULT '',
    composite_key   TEXT NOT NULL,
    chunk_index     INTEGER NOT NULL,
    text            TEXT NOT NULL,
    offset_start    INTEGER NOT NULL DEFAULT 0,
    offset_end      INTEGER NOT NULL DEFAULT 0,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now')),
    embedding       BLOB,
    embedding_model TEXT,
    PRIMARY KEY (document_id, id)
);

INSERT INTO chunks_v3 (
    id, document_id, chapter_id, chapter_title, composite_key, chunk_index, text,
    offset_start, offset_end, created_at, embedding, embedding_model
)
SELECT id, document_id, chapter_id, chapter_title, composite_key, chunk_index, text,
       offset_start, offset_end, created_at, embedding, embedding_model
FROM chunks;

DROP TABLE chunks;
ALTER TABLE chunks_v3 RENAME TO chunks;

CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks (document_id, chunk_index);
CREATE INDEX IF NOT EXISTS idx_chunks_chapter ON chunks (document_id, chapter_id, chunk_index);
CREATE INDEX IF NOT EXISTS idx_chunks_id ON chunks (id);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
    (2, _V2_SQL),
    (3, _V3_SQL),
]

CURRENT_VERSION = MIGRATIONS[-1][0]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()


def initialize(conn: sqlite3.Connection) -> None:
    """Initialize the database schema (idempotent)."""
    run_migrations(conn)
