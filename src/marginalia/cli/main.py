"""marginalia CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from marginalia.cli.index import index_cmd, reindex_cmd
from marginalia.cli.init import init_cmd
from marginalia.cli.remove import remove_cmd
from marginalia.cli.search import search_cmd
from marginalia.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("marginalia")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"marginalia {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="marginalia",
    help=(
        "marginalia — passage search for the books you read.\n\n"
        "  marginalia index   Chunk an EPUB; lexical search works immediately.\n"
        "  marginalia search  Rank passages of one book (or one chapter) for a query."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """marginalia — passage search for the books you read."""


app.command("init")(init_cmd)
app.command("index")(index_cmd)
app.command("reindex")(reindex_cmd)
app.command("search")(search_cmd)
app.command("status")(status_cmd)
app.command("remove")(remove_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed marginalia version."""
    typer.echo(f"marginalia {_installed_version()}")


if __name__ == "__main__":
    app()
