"""marginalia status — indexed documents and their embedding coverage."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from marginalia.config import ConfigError, MarginaliaConfig, load_config
from marginalia.db.connection import Database
from marginalia.db.migrations import initialize
from marginalia.db.models import DocumentStats
from marginalia.db.repository import ChunkRepository
from marginalia.indexing.status import IndexState

console = Console()


def status_cmd(
    db: Annotated[Path | None, typer.Option("--db", help="Path to the chunk database.")] = None,
) -> None:
    """Show indexed documents with chunk and embedding counts."""
    # Status works even with a broken config file
    try:
        cfg = load_config()
    except ConfigError:
        cfg = MarginaliaConfig()

    db_path = db or Path(cfg.storage.db_path)
    if not db_path.exists():
        console.print(
            Panel(
                "[yellow]No database found.[/]\n"
                "  Run:  marginalia index <book.epub>",
                title="[bold]Library[/]",
                expand=False,
            )
        )
        return

    conn = _open_db(db_path)
    try:
        documents = ChunkRepository(conn).list_documents()
    finally:
        conn.close()

    size_mb = db_path.stat().st_size / (1024 * 1024)
    if not documents:
        console.print(
            Panel(
                f"Database: {db_path} ({size_mb:.1f} MB)\n[dim]No documents indexed yet.[/]",
                title="[bold]Library[/]",
                expand=False,
            )
        )
        return

    table = Table(title=f"{db_path} ({size_mb:.1f} MB)")
    table.add_column("Document", style="bold")
    table.add_column("Chapters", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Embedded", justify="right")
    table.add_column("State")

    for stats in documents:
        table.add_row(
            stats.document_id,
            str(stats.chapter_count),
            f"{stats.chunk_count:,}",
            f"{stats.embedded_count:,}",
            _state_label(stats),
        )
    console.print(table)


def _state_label(stats: DocumentStats) -> str:
    if stats.chunk_count and stats.embedded_count >= stats.chunk_count:
        return f"[green]{IndexState.FULLY_INDEXED.value}[/]"
    return f"[yellow]{IndexState.CHUNKED_LEXICAL_READY.value}[/]"


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
