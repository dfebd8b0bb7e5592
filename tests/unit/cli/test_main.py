"""Tests for the top-level marginalia app."""

from __future__ import annotations

from typer.testing import CliRunner

from marginalia.cli.main import app

runner = CliRunner()


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.output.startswith("marginalia ")


def test_version_command() -> None:
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert result.output.startswith("marginalia ")


def test_help_lists_commands() -> None:
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for command in ("init", "index", "reindex", "search", "status", "remove"):
        assert command in result.output
