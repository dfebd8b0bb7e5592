"""Tests for marginalia init."""

from __future__ import annotations

from pathlib import Path

import yaml
from typer.testing import CliRunner

from marginalia.cli.main import app
from marginalia.config import load_config
from marginalia.db.connection import Database
from marginalia.db.repository import ChunkRepository

runner = CliRunner()


def test_init_creates_db_and_project_config(tmp_path: Path) -> None:
    result = runner.invoke(app, ["init", str(tmp_path / "library")])

    assert result.exit_code == 0, result.output
    db_path = tmp_path / "library" / ".marginalia.db"
    assert db_path.exists()
    conn = Database(db_path).connect()
    try:
        assert ChunkRepository(conn).list_documents() == []
    finally:
        conn.close()
    assert (tmp_path / "library" / "marginalia.yaml").exists()
    assert "marginalia index" in result.output


def test_init_project_yaml_matches_defaults(tmp_path: Path) -> None:
    runner.invoke(app, ["init", "--no-global-config"])

    data = yaml.safe_load((tmp_path / "marginalia.yaml").read_text(encoding="utf-8"))
    cfg = load_config(tmp_path)
    assert data["chunking"]["target_tokens"] == cfg.chunking.target_tokens == 400
    assert data["retrieval"]["rrf_k"] == cfg.retrieval.rrf_k == 60


def test_init_keeps_existing_project_yaml(tmp_path: Path) -> None:
    (tmp_path / "marginalia.yaml").write_text("retrieval:\n  top_k: 3\n", encoding="utf-8")

    result = runner.invoke(app, ["init", "--no-global-config"])

    assert result.exit_code == 0
    assert "left unchanged" in result.output
    assert (tmp_path / "marginalia.yaml").read_text(encoding="utf-8") == "retrieval:\n  top_k: 3\n"


def test_init_creates_global_config(tmp_path: Path) -> None:
    result = runner.invoke(app, ["init"])

    assert result.exit_code == 0, result.output
    assert (tmp_path / "home" / ".marginalia" / "config.yaml").exists()


def test_init_no_global_config(tmp_path: Path) -> None:
    result = runner.invoke(app, ["init", "--no-global-config"])

    assert result.exit_code == 0
    assert not (tmp_path / "home" / ".marginalia" / "config.yaml").exists()
