"""marginalia index / reindex — chunk an EPUB into the chunk store.

Chunking streams batches into the store; the book is lexically searchable as
soon as the command prints the chunk count. Embedding backfill then runs to
completion with a progress bar (skip it with --no-embeddings).
"""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from marginalia.cli.errors import (
    err_config,
    err_file_not_found,
    err_no_chunks,
    err_unreadable_epub,
)
from marginalia.config import ConfigError, MarginaliaConfig, load_config
from marginalia.db.connection import Database
from marginalia.db.migrations import initialize
from marginalia.db.models import Document
from marginalia.db.store import SqliteChunkStore
from marginalia.errors import ChunkingProducedNothingError
from marginalia.indexing.status import IndexState, IndexStatus
from marginalia.ingest.chunker import ChunkingOptions
from marginalia.ingest.epub import EpubError, load_epub
from marginalia.logging_config import setup_logging
from marginalia.service import IndexOptions, Retriever

console = Console()

_STATE_LABELS = {
    IndexState.NOT_INDEXED: "Waiting…",
    IndexState.CHUNKING: "Chunking…",
    IndexState.CHUNKED_LEXICAL_READY: "Chunked",
    IndexState.EMBEDDING_BACKFILL: "Embedding…",
    IndexState.FULLY_INDEXED: "Embedded",
}


def index_cmd(
    path: Annotated[Path, typer.Argument(help="EPUB file to index.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the chunk database (created if missing)."),
    ] = None,
    target_tokens: Annotated[
        int | None, typer.Option("--target-tokens", help="Soft chunk size in tokens.")
    ] = None,
    max_tokens: Annotated[
        int | None, typer.Option("--max-tokens", help="Hard chunk size ceiling in tokens.")
    ] = None,
    overlap_tokens: Annotated[
        int | None, typer.Option("--overlap-tokens", help="Tokens carried between chunks.")
    ] = None,
    no_embeddings: Annotated[
        bool, typer.Option("--no-embeddings", help="Skip embedding backfill (lexical only).")
    ] = False,
    no_worker: Annotated[
        bool, typer.Option("--no-worker", help="Chunk in this process instead of a worker.")
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging.")] = False,
) -> None:
    """Index an EPUB for passage search."""
    _run(
        path, db, target_tokens, max_tokens, overlap_tokens, no_embeddings, no_worker, verbose,
        reindex=False,
    )


def reindex_cmd(
    path: Annotated[Path, typer.Argument(help="EPUB file to re-index.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the chunk database (created if missing)."),
    ] = None,
    target_tokens: Annotated[
        int | None, typer.Option("--target-tokens", help="Soft chunk size in tokens.")
    ] = None,
    max_tokens: Annotated[
        int | None, typer.Option("--max-tokens", help="Hard chunk size ceiling in tokens.")
    ] = None,
    overlap_tokens: Annotated[
        int | None, typer.Option("--overlap-tokens", help="Tokens carried between chunks.")
    ] = None,
    no_embeddings: Annotated[
        bool, typer.Option("--no-embeddings", help="Skip embedding backfill (lexical only).")
    ] = False,
    no_worker: Annotated[
        bool, typer.Option("--no-worker", help="Chunk in this process instead of a worker.")
    ] = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Debug logging.")] = False,
) -> None:
    """Delete an EPUB's stored chunks and index it again."""
    _run(
        path, db, target_tokens, max_tokens, overlap_tokens, no_embeddings, no_worker, verbose,
        reindex=True,
    )


# ------------------------------------------------------------------
# Shared pipeline
# ------------------------------------------------------------------


def _run(
    path: Path,
    db: Path | None,
    target_tokens: int | None,
    max_tokens: int | None,
    overlap_tokens: int | None,
    no_embeddings: bool,
    no_worker: bool,
    verbose: bool,
    reindex: bool,
) -> None:
    setup_logging(verbose)

    try:
        cfg = load_config()
        options = _index_options(cfg, target_tokens, max_tokens, overlap_tokens, no_embeddings)
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)

    if not path.is_file():
        console.print(err_file_not_found(str(path)))
        raise typer.Exit(1)

    try:
        document = load_epub(path)
    except EpubError as exc:
        console.print(err_unreadable_epub(str(path), str(exc)))
        raise typer.Exit(1)

    console.print(
        f"\n[bold]→ {document.title}[/]  [dim]({len(document.chapters)} chapters, id {document.id})[/]"
    )

    conn = _open_db(db or Path(cfg.storage.db_path))
    try:
        status = asyncio.run(
            _index(document, cfg, conn, options, use_worker=not no_worker, reindex=reindex)
        )
    except ChunkingProducedNothingError:
        console.print(err_no_chunks(str(path)))
        raise typer.Exit(1)
    finally:
        conn.close()

    console.print(f"  [green]✓[/] {status.chunk_count} chunks ({status.state.value})")
    console.print(f"  Document id: [bold]{document.id}[/]")


def _index_options(
    cfg: MarginaliaConfig,
    target_tokens: int | None,
    max_tokens: int | None,
    overlap_tokens: int | None,
    no_embeddings: bool,
) -> IndexOptions:
    """Apply CLI flag overrides on top of the loaded config."""
    try:
        chunking = ChunkingOptions(
            target_tokens=target_tokens if target_tokens is not None else cfg.chunking.target_tokens,
            max_tokens=max_tokens if max_tokens is not None else cfg.chunking.max_tokens,
            overlap_tokens=overlap_tokens if overlap_tokens is not None else cfg.chunking.overlap_tokens,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    return IndexOptions(
        chunking=chunking,
        embedding_batch_size=cfg.embedding.batch_size,
        generate_embeddings=cfg.embedding.enabled and not no_embeddings,
    )


async def _index(
    document: Document,
    cfg: MarginaliaConfig,
    conn: sqlite3.Connection,
    options: IndexOptions,
    use_worker: bool,
    reindex: bool,
) -> IndexStatus:
    retriever = Retriever.from_config(
        cfg, SqliteChunkStore(conn), use_worker=use_worker and cfg.indexing.use_worker
    )
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            transient=True,
            console=console,
        ) as prog:
            task = prog.add_task("Chunking…", total=100)

            def _on_status(status: IndexStatus) -> None:
                if status.document_id == document.id:
                    prog.update(
                        task, completed=status.progress, description=_STATE_LABELS[status.state]
                    )

            unsubscribe = retriever.statuses.subscribe(_on_status)
            try:
                if reindex:
                    await retriever.reindex_document(document, options)
                else:
                    await retriever.index_document(document, options)
                await retriever.backfill.join()
            finally:
                unsubscribe()
        return await retriever.status(document.id)
    finally:
        await retriever.close()


def _open_db(db_path: Path) -> sqlite3.Connection:
    """Open (or create) the chunk database and run migrations."""
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
