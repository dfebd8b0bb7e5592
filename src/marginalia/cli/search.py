"""marginalia search — rank a book's passages for a query."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from marginalia.cli.errors import err_config, err_no_db, err_not_indexed
from marginalia.config import ConfigError, MarginaliaConfig, load_config
from marginalia.db.connection import Database
from marginalia.db.migrations import initialize
from marginalia.db.store import SqliteChunkStore
from marginalia.errors import NotIndexedError
from marginalia.logging_config import setup_logging
from marginalia.rag.ranking import SearchResult
from marginalia.service import Retriever, SearchOptions, SearchScope

console = Console()

_SNIPPET_CHARS = 160


def search_cmd(
    query: Annotated[str, typer.Argument(help="What to look for.")],
    document: Annotated[
        str, typer.Option("--document", "-d", help="Document id (see: marginalia status).")
    ],
    chapter: Annotated[
        str | None, typer.Option("--chapter", "-c", help="Restrict the search to one chapter id.")
    ] = None,
    top_k: Annotated[
        int | None, typer.Option("--top-k", "-k", min=1, help="Number of passages to show.")
    ] = None,
    db: Annotated[Path | None, typer.Option("--db", help="Path to the chunk database.")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging.")] = False,
) -> None:
    """Search one indexed book (or one chapter of it)."""
    setup_logging(verbose)

    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)

    db_path = db or Path(cfg.storage.db_path)
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)

    options = SearchOptions(
        scope=SearchScope.CHAPTER if chapter else SearchScope.WHOLE_DOCUMENT,
        chapter_id=chapter,
        top_k=top_k or cfg.retrieval.top_k,
    )

    conn = _open_db(db_path)
    try:
        results = asyncio.run(_search(query, document, options, cfg, conn))
    except NotIndexedError:
        console.print(err_not_indexed(document, chapter))
        raise typer.Exit(1)
    finally:
        conn.close()

    _print_results(query, results)


async def _search(
    query: str,
    document_id: str,
    options: SearchOptions,
    cfg: MarginaliaConfig,
    conn: sqlite3.Connection,
) -> list[SearchResult]:
    retriever = Retriever.from_config(cfg, SqliteChunkStore(conn), use_worker=False)
    try:
        return await retriever.search(query, document_id, options)
    finally:
        await retriever.close()


def _print_results(query: str, results: list[SearchResult]) -> None:
    table = Table(title=f"Results for “{query}”", show_lines=False)
    table.add_column("#", justify="right", style="dim", width=3)
    table.add_column("Chapter", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Passage")

    for rank, result in enumerate(results, start=1):
        table.add_row(
            str(rank),
            result.chunk.chapter_title or result.chunk.chapter_id,
            f"{result.score:.4f}",
            _snippet(result.chunk.text),
        )
    console.print(table)


def _snippet(text: str) -> str:
    flat = " ".join(text.split())
    if len(flat) <= _SNIPPET_CHARS:
        return flat
    return flat[: _SNIPPET_CHARS - 1].rstrip() + "…"


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
