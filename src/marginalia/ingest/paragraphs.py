"""Chapter markup to block-level paragraphs.

Two paths produce the paragraph stream:

- structural: BeautifulSoup collects the text of block elements in document
  order (``p``, ``h1``-``h6``, ``blockquote``, ``li``);
- regex: a DOM-free rendition of the same rule, used by the indexing worker
  when structural parsing is disabled.

Inline markup joins its text without a gap (``<span>T</span>he`` reads
"The"); block and line-break boundaries separate words. Both paths fall back
to tag stripping plus blank-line splitting when the markup has no block
elements.
"""

from __future__ import annotations

import html
import re

from bs4 import BeautifulSoup

from marginalia.ingest.tokenizer import normalize_whitespace, split_into_paragraphs

BLOCK_TAGS: tuple[str, ...] = (
    "p",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
    "blockquote",
    "li",
)

# Elements whose boundaries separate words.
_BREAKING_TAGS: tuple[str, ...] = BLOCK_TAGS + ("br", "div", "tr", "td", "th", "dd", "dt")

_BLOCK_RE = re.compile(
    r"<(p|h[1-6]|blockquote|li)(?:\s[^>]*)?>(.*?)</\1\s*>",
    re.IGNORECASE | re.DOTALL,
)
_BREAK_RE = re.compile(
    r"</?(?:p|h[1-6]|blockquote|li|br|div|tr|td|th|dd|dt)(?:\s[^>]*)?/?>",
    re.IGNORECASE,
)
_TAG_RE = re.compile(r"<[^>]+>")
_DROP_RE = re.compile(r"<(script|style|head)[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL)


def extract_paragraphs(markup: str, structural: bool = True) -> list[str]:
    """Return the ordered plain-text paragraphs of *markup*.

    Args:
        markup: Chapter HTML/XHTML, or plain text.
        structural: Parse with BeautifulSoup. When False the regex path is
            used, which needs no parser.
    """
    if not markup or not markup.strip():
        return []
    if not structural:
        return extract_paragraphs_regex(markup)

    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup.find_all(["script", "style", "head"]):
        tag.decompose()
    for tag in soup.find_all(_BREAKING_TAGS):
        tag.insert_before(" ")
        tag.insert_after(" ")

    paragraphs: list[str] = []
    for element in soup.find_all(BLOCK_TAGS):
        # Nested blocks (a <p> inside a <blockquote>) are read via the outermost one.
        if element.find_parent(BLOCK_TAGS) is not None:
            continue
        text = normalize_whitespace(element.get_text())
        if text:
            paragraphs.append(text)

    if paragraphs:
        return paragraphs
    return _split_plain(soup.get_text())


def extract_paragraphs_regex(markup: str) -> list[str]:
    """DOM-free paragraph extraction with the same block rule as the structural path."""
    if not markup or not markup.strip():
        return []
    cleaned = _DROP_RE.sub(" ", markup)

    paragraphs: list[str] = []
    for match in _BLOCK_RE.finditer(cleaned):
        text = normalize_whitespace(_strip_tags(match.group(2)))
        if text:
            paragraphs.append(text)

    if paragraphs:
        return paragraphs
    return _split_plain(_strip_tags(cleaned))


def _strip_tags(fragment: str) -> str:
    return html.unescape(_TAG_RE.sub("", _BREAK_RE.sub(" ", fragment)))


def _split_plain(text: str) -> list[str]:
    """Split tag-free text on blank lines, collapsing whitespace inside each paragraph."""
    return [
        p for p in (normalize_whitespace(part) for part in split_into_paragraphs(text)) if p
    ]
