"""Word tokenizer used for chunk sizing and BM25 scoring.

Token counts are an approximation of LLM tokenizer counts and are only used
for relative sizing decisions.
"""

from __future__ import annotations

import re

# Alphanumeric runs with at most one internal apostrophe ("don't" is one token).
WORD_RE = re.compile(r"[a-z0-9]+(?:'[a-z0-9]+)?", re.IGNORECASE)
_BLANK_LINE_RE = re.compile(r"\n\s*\n")
_WHITESPACE_RE = re.compile(r"\s+")


def tokenize(text: str) -> list[str]:
    """Return the lowercase word tokens of *text*.

    Examples:
        >>> tokenize("Don't panic, Arthur!")
        ["don't", 'panic', 'arthur']
    """
    if not text:
        return []
    return WORD_RE.findall(text.lower())


def estimate_token_count(text: str) -> int:
    return len(tokenize(text))


def split_into_paragraphs(text: str) -> list[str]:
    """Split *text* on blank lines; paragraphs are stripped, empties dropped."""
    return [p.strip() for p in _BLANK_LINE_RE.split(text) if p.strip()]


def normalize_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()
