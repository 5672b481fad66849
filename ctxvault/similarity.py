"""
Text and vector similarity for diversification and duplicate checks.

Two measures:
- **Cosine**: between embedding vectors, used whenever both sides have one.
- **Token Jaccard**: set-overlap of normalized word tokens, the fallback
  when an entry has no embedding.
"""

from __future__ import annotations

import re
import string
from typing import FrozenSet, Optional, Sequence

import numpy as np

# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

# Precompiled translation table: strip all punctuation
_PUNCT_TABLE = str.maketrans("", "", string.punctuation)

# Collapse runs of whitespace
_WS_RE = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    text = text.lower()
    text = text.translate(_PUNCT_TABLE)
    text = _WS_RE.sub(" ", text)
    return text.strip()


def tokenize(text: str) -> list[str]:
    """Split normalized text into word tokens."""
    if not text:
        return []
    return text.split()


def token_set(text: str) -> FrozenSet[str]:
    """Normalized token set of *text*."""
    return frozenset(tokenize(normalize(text)))


# ---------------------------------------------------------------------------
# Similarity measures
# ---------------------------------------------------------------------------


def jaccard_sets(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    """J(A, B) = |A ∩ B| / |A ∪ B|; 1.0 for two empty sets."""
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def jaccard(a: str, b: str) -> float:
    """Token-level Jaccard similarity between two texts.

    Inputs are normalized internally. Returns 1.0 if both are empty
    (vacuous similarity), 0.0 if one is empty and the other is not.
    """
    return jaccard_sets(token_set(a), token_set(b))


def cosine_similarity(
    a: Optional[Sequence[float]], b: Optional[Sequence[float]],
) -> Optional[float]:
    """Cosine similarity in [-1, 1], or None if either vector is unusable."""
    if a is None or b is None:
        return None
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape or va.size == 0:
        return None
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return None
    return float(np.dot(va, vb) / (na * nb))
