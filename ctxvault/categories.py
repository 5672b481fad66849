"""
Kind Registry — kind -> (category, default tier, staleness window)

The kind taxonomy is open: any ``^[a-z][a-z0-9_-]*$`` string is a valid
kind.  Registered kinds carry their category and defaults; anything else
falls back to a knowledge/working spec with no staleness window.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Optional

from ctxvault.types import VALID_CATEGORIES, VALID_TIERS

# category -> top-level directory under the vault root
CATEGORY_DIRS: Dict[str, str] = {
    "knowledge": "knowledge",
    "entity": "entities",
    "event": "events",
}
DIR_CATEGORIES: Dict[str, str] = {v: k for k, v in CATEGORY_DIRS.items()}


@dataclass(frozen=True)
class KindSpec:
    """Defaults attached to one kind."""
    category: str = "knowledge"
    default_tier: str = "working"
    staleness_days: Optional[int] = None


_DEFAULT_KINDS: Dict[str, KindSpec] = {
    # knowledge
    "insight": KindSpec("knowledge"),
    "decision": KindSpec("knowledge", "durable", 365),
    "pattern": KindSpec("knowledge", "durable", 180),
    "architecture": KindSpec("knowledge", "durable"),
    "prompt": KindSpec("knowledge"),
    "note": KindSpec("knowledge"),
    "document": KindSpec("knowledge"),
    "reference": KindSpec("knowledge", "working", 90),
    "brief": KindSpec("knowledge"),
    "observation": KindSpec("knowledge", "ephemeral"),
    # entity
    "contact": KindSpec("entity"),
    "project": KindSpec("entity"),
    "tool": KindSpec("entity"),
    "source": KindSpec("entity"),
    "bucket": KindSpec("entity"),
    # event
    "conversation": KindSpec("event"),
    "message": KindSpec("event"),
    "session": KindSpec("event", "ephemeral"),
    "task": KindSpec("event"),
    "log": KindSpec("event"),
    "feedback": KindSpec("event"),
}


class KindRegistry:
    """Mutable kind registry with a fallback for unregistered kinds."""

    def __init__(
        self,
        kinds: Optional[Dict[str, KindSpec]] = None,
        fallback: KindSpec = KindSpec(),
    ):
        self._kinds: Dict[str, KindSpec] = dict(
            _DEFAULT_KINDS if kinds is None else kinds
        )
        self._fallback = fallback

    def register(
        self,
        kind: str,
        category: Optional[str] = None,
        default_tier: Optional[str] = None,
        staleness_days: Optional[int] = None,
    ) -> KindSpec:
        """Add or override a kind.  Omitted fields keep their current value."""
        base = self._kinds.get(kind, self._fallback)
        spec = replace(
            base,
            category=category or base.category,
            default_tier=default_tier or base.default_tier,
            staleness_days=(
                staleness_days if staleness_days is not None else base.staleness_days
            ),
        )
        if spec.category not in VALID_CATEGORIES:
            raise ValueError(f"Unknown category {spec.category!r} for kind {kind!r}")
        if spec.default_tier not in VALID_TIERS:
            raise ValueError(f"Unknown tier {spec.default_tier!r} for kind {kind!r}")
        self._kinds[kind] = spec
        return spec

    def spec(self, kind: str) -> KindSpec:
        return self._kinds.get(kind, self._fallback)

    def category_of(self, kind: str) -> str:
        return self.spec(kind).category

    def default_tier(self, kind: str) -> str:
        return self.spec(kind).default_tier

    def staleness_days(self, kind: str) -> Optional[int]:
        return self.spec(kind).staleness_days

    def kind_dir(self, kind: str) -> str:
        """Relative directory holding files of this kind: ``<category-dir>/<kind>``."""
        return f"{CATEGORY_DIRS[self.category_of(kind)]}/{kind}"
