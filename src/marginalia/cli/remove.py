"""marginalia remove — delete a document's chunks and embeddings.

Usage:
  marginalia remove --document 3f2a9c0d1e4b5a67
  marginalia remove --document 3f2a9c0d1e4b5a67 --yes
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from marginalia.cli.errors import err_config, err_document_not_found, err_no_db
from marginalia.config import ConfigError, load_config
from marginalia.db.connection import Database
from marginalia.db.migrations import initialize
from marginalia.db.store import SqliteChunkStore
from marginalia.service import Retriever

console = Console()


def remove_cmd(
    document: Annotated[str, typer.Option("--document", "-d", help="Document id to remove.")],
    db: Annotated[Path | None, typer.Option("--db", help="Path to the chunk database.")] = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
) -> None:
    """Remove a document and all its chunks from the library."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)

    db_path = db or Path(cfg.storage.db_path)
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)

    conn = _open_db(db_path)
    store = SqliteChunkStore(conn)

    try:
        chunk_count = store.repository.count_chunks(document)
        if chunk_count == 0:
            console.print(err_document_not_found(document))
            raise typer.Exit(0)

        console.print(f"\nRemove document: [bold]{document}[/]  ({chunk_count} chunks)")
        if not yes:
            if not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)

        asyncio.run(_remove(store, document))
        console.print(f"\n[green]✓[/] Removed: {document}")
        console.print(f"  {chunk_count} chunks deleted")
    finally:
        conn.close()


async def _remove(store: SqliteChunkStore, document_id: str) -> None:
    retriever = Retriever(store)
    try:
        await retriever.remove_document(document_id)
    finally:
        await retriever.close()


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
