"""marginalia database layer."""

from marginalia.db.connection import Database
from marginalia.db.migrations import MIGRATIONS, initialize, run_migrations
from marginalia.db.repository import ChunkRepository
from marginalia.db.store import ChunkStore, SqliteChunkStore
from marginalia.db.vectors import deserialize_embedding, serialize_embedding

__all__ = [
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ChunkRepository",
    "ChunkStore",
    "SqliteChunkStore",
    "serialize_embedding",
    "deserialize_embedding",
]
