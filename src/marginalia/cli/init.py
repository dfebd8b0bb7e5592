"""marginalia init — scaffold a library directory.

Creates:
  .marginalia.db           — empty chunk database with schema
  marginalia.yaml          — project config with commented defaults
  ~/.marginalia/config.yaml — global defaults (created once, mode 0o600)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from marginalia.config import DEFAULT_DB_NAME, ensure_global_config
from marginalia.db.connection import Database
from marginalia.db.migrations import initialize

console = Console()

_PROJECT_YAML = """\
# marginalia project configuration. Values shown are the defaults.

chunking:
  target_tokens: 400
  max_tokens: 500
  overlap_tokens: 100

retrieval:
  top_k: 12
  rrf_k: 60

embedding:
  provider: local        # local | litellm | none
  # model: openai/text-embedding-3-small
  batch_size: 8

indexing:
  use_worker: true
  chunk_batch_size: 50
"""


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = Path("."),
    global_config: Annotated[
        bool,
        typer.Option("--global-config/--no-global-config", help="Also create ~/.marginalia/config.yaml."),
    ] = True,
) -> None:
    """Create the chunk database and a marginalia.yaml in PROJECT_DIR."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    db_path = project_dir / DEFAULT_DB_NAME
    conn = Database(db_path).connect()
    try:
        initialize(conn)
    finally:
        conn.close()
    console.print(f"  [green]✓[/] {DEFAULT_DB_NAME}")

    yaml_path = project_dir / "marginalia.yaml"
    if yaml_path.exists():
        console.print("  [dim]marginalia.yaml exists — left unchanged[/]")
    else:
        yaml_path.write_text(_PROJECT_YAML, encoding="utf-8")
        console.print("  [green]✓[/] marginalia.yaml")

    if global_config:
        cfg_path = ensure_global_config()
        console.print(f"  [green]✓[/] {cfg_path} (global config)")

    console.print("\nNext:  marginalia index <book.epub>")
