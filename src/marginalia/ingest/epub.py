"""EPUB loader: spine-ordered chapters via zipfile + bs4.

The chapter HTML is kept as-is; paragraph extraction happens at chunking
time so the worker and inline paths see identical input.
"""

from __future__ import annotations

import hashlib
import warnings
import zipfile
from pathlib import Path

from bs4 import BeautifulSoup, XMLParsedAsHTMLWarning

from marginalia.db.models import Chapter, Document

# OPF and container.xml are parsed with html.parser; lxml is not a dependency.
warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)

_HEADINGS = ("h1", "h2", "h3", "h4", "h5", "h6")
_HTML_SUFFIXES = (".html", ".xhtml", ".htm")


class EpubError(ValueError):
    """Raised when a file is not a readable EPUB archive."""


def document_id_for(path: Path | str) -> str:
    """Stable document id: the first 16 hex digits of the file's sha256."""
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for block in iter(lambda: fh.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()[:16]


def load_epub(path: Path | str) -> Document:
    """Read *path* into a Document with one Chapter per spine item.

    Chapter ids are manifest ids; a chapter's title is the text of its first
    heading, or the manifest id when it has none.

    Raises:
        EpubError: If the archive is unreadable or has no OPF package file.
    """
    path = Path(path)
    try:
        with zipfile.ZipFile(path, "r") as zf:
            names = set(zf.namelist())
            opf_path = _find_opf_path(zf, names)
            opf = BeautifulSoup(
                zf.read(opf_path).decode("utf-8", errors="replace"), "html.parser"
            )
            opf_dir = str(Path(opf_path).parent)

            chapters: list[Chapter] = []
            for item_id, href in _spine_items(opf):
                full_path = f"{opf_dir}/{href}".lstrip("/") if opf_dir != "." else href
                if full_path not in names:
                    full_path = href
                if full_path not in names:
                    continue
                html = zf.read(full_path).decode("utf-8", errors="replace")
                chapters.append(Chapter(id=item_id, title=_chapter_title(html, item_id), html=html))
    except (zipfile.BadZipFile, KeyError) as exc:
        raise EpubError(f"Cannot read EPUB '{path}': {exc}") from exc

    return Document(id=document_id_for(path), title=_book_title(opf, path), chapters=chapters)


def _find_opf_path(zf: zipfile.ZipFile, names: set[str]) -> str:
    """Find the OPF package file path from META-INF/container.xml."""
    if "META-INF/container.xml" in names:
        xml = zf.read("META-INF/container.xml").decode("utf-8", errors="replace")
        soup = BeautifulSoup(xml, "html.parser")
        rootfile = soup.find("rootfile")
        if rootfile and rootfile.get("full-path"):
            return rootfile["full-path"]
    # Fallback: first .opf file found
    for name in sorted(names):
        if name.endswith(".opf"):
            return name
    raise EpubError("No OPF package file found in EPUB archive.")


def _spine_items(opf: BeautifulSoup) -> list[tuple[str, str]]:
    """Return ``(manifest id, href)`` pairs in spine order."""
    manifest: dict[str, str] = {}
    for item in opf.find_all("item"):
        item_id = item.get("id", "")
        href = item.get("href", "")
        media_type = item.get("media-type", "")
        if item_id and ("html" in media_type or href.endswith(_HTML_SUFFIXES)):
            manifest[item_id] = href

    items = [
        (itemref["idref"], manifest[itemref["idref"]])
        for itemref in opf.find_all("itemref")
        if itemref.get("idref") in manifest
    ]
    # No spine: every HTML item in manifest order
    return items or list(manifest.items())


def _chapter_title(html: str, fallback: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    heading = soup.find(_HEADINGS)
    if heading is not None:
        title = " ".join(heading.get_text(" ").split())
        if title:
            return title
    return fallback


def _book_title(opf: BeautifulSoup, path: Path) -> str:
    # html.parser lowercases tag names and keeps the namespace prefix.
    node = opf.find("dc:title")
    if node is not None and node.get_text(strip=True):
        return node.get_text(strip=True)
    return path.stem
