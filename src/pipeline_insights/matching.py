"""Shared name normalisation and search matching for identity, filters and duplicates."""

import re
from typing import Optional

_LEGAL_SUFFIX = re.compile(r",?\s*\b(inc|llc|ltd|corp|co)\.?$", re.IGNORECASE)
_WHITESPACE = re.compile(r"\s+")


def normalize_name(name: Optional[str]) -> str:
    """
    Canonical comparison form of an opportunity or client name.
    Lowercases, collapses whitespace and drops a trailing legal suffix
    ("Acme, Inc." and "acme" compare equal).
    """
    text = _WHITESPACE.sub(" ", (name or "").strip())
    text = _LEGAL_SUFFIX.sub("", text).strip()
    return text.lower()


def names_match(left: Optional[str], right: Optional[str]) -> bool:
    left_norm = normalize_name(left)
    return bool(left_norm) and left_norm == normalize_name(right)


def _word_in_text(text: str, word: str) -> bool:
    """Word-boundary match for single word (avoids substring false positives)."""
    if not word or not text:
        return False
    pattern = rf"\b{re.escape(word.lower())}\b"
    return bool(re.search(pattern, text.lower()))


def search_matches(text: str, query: str) -> bool:
    """
    Free-text search: full phrase match, else every query word appears as a word.
    Empty query matches everything.
    """
    q = query.lower().strip()
    if not q:
        return True
    haystack = text.lower()
    if q in haystack:
        return True
    words = q.split()
    return len(words) > 1 and all(_word_in_text(haystack, w) for w in words)
