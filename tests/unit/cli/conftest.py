"""Fixtures for CLI tests: an isolated config environment and a sample EPUB."""

from __future__ import annotations

import io
import zipfile
from pathlib import Path

import pytest
from rich.console import Console

_CONTAINER_XML = (
    '<?xml version="1.0"?>'
    '<container version="1.0" xmlns="urn:oasis:names:tc:opendocument:xmlns:container">'
    '<rootfiles><rootfile full-path="OEBPS/content.opf" '
    'media-type="application/oebps-package+xml"/></rootfiles></container>'
)

_CHAPTERS = {
    "ch-1": ("Chapter One", "<p>Apples are crisp and bright.</p><p>They grow in orchards.</p>"),
    "ch-2": ("Chapter Two", "<p>Bananas are soft and sweet.</p><p>They grow in bunches.</p>"),
}


def _build_epub(chapters: dict[str, tuple[str, str]]) -> bytes:
    buf = io.BytesIO()
    manifest, spine = [], []
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("META-INF/container.xml", _CONTAINER_XML)
        for idx, (ch_id, (title, body)) in enumerate(chapters.items()):
            href = f"chapter{idx:02d}.xhtml"
            zf.writestr(f"OEBPS/{href}", f"<html><body><h1>{title}</h1>{body}</body></html>")
            manifest.append(f'<item id="{ch_id}" href="{href}" media-type="application/xhtml+xml"/>')
            spine.append(f'<itemref idref="{ch_id}"/>')
        zf.writestr(
            "OEBPS/content.opf",
            '<package xmlns="http://www.idpf.org/2007/opf" version="2.0">'
            '<metadata xmlns:dc="http://purl.org/dc/elements/1.1/"><dc:title>Fruit</dc:title></metadata>'
            f'<manifest>{"".join(manifest)}</manifest><spine>{"".join(spine)}</spine></package>',
        )
    return buf.getvalue()


@pytest.fixture(autouse=True)
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run every CLI test in tmp_path with no global config and no embedding provider."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(
        "marginalia.config._GLOBAL_CONFIG_PATH", tmp_path / "home" / ".marginalia" / "config.yaml"
    )
    monkeypatch.setenv("MARGINALIA_EMBEDDING_PROVIDER", "none")
    monkeypatch.delenv("MARGINALIA_DB", raising=False)
    monkeypatch.delenv("MARGINALIA_EMBEDDING_MODEL", raising=False)
    return tmp_path


@pytest.fixture
def sample_epub(tmp_path: Path) -> Path:
    path = tmp_path / "fruit.epub"
    path.write_bytes(_build_epub(_CHAPTERS))
    return path


@pytest.fixture(autouse=True)
def wide_console(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep rich tables on one line per row so assertions see whole cells."""
    for module in ("index", "init", "remove", "search", "status"):
        monkeypatch.setattr(f"marginalia.cli.{module}.console", Console(width=200))
