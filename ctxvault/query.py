"""
Query sanitizing and tiered FTS5 query construction.

User text is reduced to plain terms (FTS5 metacharacters stripped,
hyphenated words split) and then expanded into a single MATCH expression
with three tiers joined by OR:

    "w1 w2 w3"                      exact phrase
    NEAR("w1" "w2" "w3", 10)        all terms within a 10-token window
    ("w1" AND "w2" AND "w3")        all terms anywhere

Exact matches satisfy every tier and therefore rank highest under bm25,
while looser matches still surface.
"""

from __future__ import annotations

import re
from typing import List

NEAR_WINDOW = 10

# FTS5 syntax characters that must never reach MATCH unquoted
_FTS_META_RE = re.compile(r"[*\"():^~{}\[\]+<>=!@#$%&|\\]")
# Terms are split on whitespace and hyphens
_SPLIT_RE = re.compile(r"[\s\-]+")
_WORD_RE = re.compile(r"\w", re.UNICODE)


def sanitize_query(text: str) -> List[str]:
    """Return the plain search terms of *text* (possibly empty).

    Strips FTS5 metacharacters, splits hyphenated words into separate terms
    and collapses whitespace.  Terms without any word character are dropped.
    """
    if not text:
        return []
    cleaned = _FTS_META_RE.sub(" ", text)
    return [t for t in _SPLIT_RE.split(cleaned) if t and _WORD_RE.search(t)]


def _quote(term: str) -> str:
    return '"' + term.replace('"', '""') + '"'


def build_fts_query(terms: List[str], near_window: int = NEAR_WINDOW) -> str:
    """Build the tiered phrase / NEAR / AND MATCH expression.

    Returns "" for no terms and a single quoted term for one term.
    """
    if not terms:
        return ""
    if len(terms) == 1:
        return _quote(terms[0])
    quoted = [_quote(t) for t in terms]
    phrase = _quote(" ".join(terms))
    near = f"NEAR({' '.join(quoted)}, {near_window})"
    conj = "(" + " AND ".join(quoted) + ")"
    return f"{phrase} OR {near} OR {conj}"
