"""marginalia rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from marginalia.cli.errors import err_no_db
    console.print(err_no_db(".marginalia.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_db(db_path: str) -> str:
    """No chunk database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  marginalia index <book.epub>"
    )


def err_file_not_found(path: str) -> str:
    return (
        f"[red]Error:[/] File not found: '{path}'\n"
        "  Check the path and try again."
    )


def err_unreadable_epub(path: str, reason: str) -> str:
    """The file exists but is not a readable EPUB archive."""
    return (
        f"[red]Error:[/] Cannot read '{path}' as an EPUB.\n"
        f"  Reason: {reason}\n"
        "  Make sure the file is a valid, DRM-free .epub archive."
    )


def err_no_chunks(path: str) -> str:
    """Indexing completed but produced no chunks."""
    return (
        f"[red]Error:[/] No text could be extracted from '{path}'.\n"
        "  The book may contain only images. Nothing was indexed."
    )


def err_not_indexed(document_id: str, chapter_id: str | None = None) -> str:
    """Search scope has no chunks."""
    if chapter_id:
        return (
            f"[red]Error:[/] Chapter '{chapter_id}' of document '{document_id}' has no indexed text.\n"
            "  Check the chapter id, or search the whole book by omitting --chapter."
        )
    return (
        f"[red]Error:[/] Document '{document_id}' is not indexed.\n"
        "  Run:  marginalia index <book.epub>   then:  marginalia status"
    )


def err_config(reason: str) -> str:
    """Configuration file or value is invalid."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {reason}\n"
        "  Fix marginalia.yaml or ~/.marginalia/config.yaml and try again."
    )


def err_document_not_found(document_id: str) -> str:
    return (
        f"[yellow]Document not found:[/] '{document_id}' has no stored chunks.\n"
        "  Run:  marginalia status  to see all indexed documents."
    )
