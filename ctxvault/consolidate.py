"""
Consolidation Analysis — Hot Tags and Cold Entries

Read-only heuristics over the whole vault:

  - Hot tag: a tag carried by >= ``tag_threshold`` live, non-superseded,
    non-synthesis entries, with no synthesis entry (kind ``brief`` by
    default) for it newer than ``max_synthesis_age_days``.  Candidates for
    writing a new synthesis.
  - Cold entry: created more than ``max_age_days`` ago, accessed at most
    ``max_hit_count`` times, not superseded and not of a protected kind.
    Candidates for archival review.

Nothing is modified here.  Each query is a short read statement.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional, Sequence

from ctxvault.config import ConsolidateConfig
from ctxvault.store import VaultStore
from ctxvault.types import ConsolidationReport, HotTag, age_days, format_ts, parse_ts

logger = logging.getLogger(__name__)


def find_hot_tags(
    store: VaultStore,
    now: str,
    tag_threshold: int = 10,
    max_synthesis_age_days: int = 7,
    synthesis_kinds: Sequence[str] = ("brief",),
    owner: Optional[str] = None,
) -> List[HotTag]:
    """Tags that warrant a synthesis entry, most populated first.

    ``last_synthesis_age_days`` is the whole-day age of the newest synthesis
    entry for the tag, or None if there is none.
    """
    counts = store.tag_counts(now, exclude_kinds=synthesis_kinds, owner=owner)
    latest = store.latest_tagged(synthesis_kinds, now, owner=owner)
    hot: List[HotTag] = []
    for tag, count in counts.items():
        if count < tag_threshold:
            continue
        last = latest.get(tag)
        age: Optional[int] = None
        if last is not None:
            exact = age_days(last, now)
            if exact < max_synthesis_age_days:
                continue
            age = int(exact)
        hot.append(HotTag(tag=tag, entry_count=count, last_synthesis_age_days=age))
    hot.sort(key=lambda h: (-h.entry_count, h.tag))
    return hot


def find_cold_entries(
    store: VaultStore,
    now: str,
    max_age_days: int = 90,
    max_hit_count: int = 0,
    protected_kinds: Sequence[str] = ("decision", "architecture", "brief"),
    owner: Optional[str] = None,
) -> List[str]:
    """Ids of old, rarely accessed, unprotected entries, oldest first."""
    cutoff = format_ts(parse_ts(now) - timedelta(days=max_age_days))
    return store.cold_ids(cutoff, max_hit_count, protected_kinds, now, owner=owner)


def consolidation_scan(
    store: VaultStore,
    now: str,
    config: Optional[ConsolidateConfig] = None,
    owner: Optional[str] = None,
) -> ConsolidationReport:
    """Run both heuristics with the configured thresholds."""
    config = config or ConsolidateConfig()
    report = ConsolidationReport(
        hot_tags=find_hot_tags(
            store, now,
            tag_threshold=config.tag_threshold,
            max_synthesis_age_days=config.max_synthesis_age_days,
            synthesis_kinds=config.synthesis_kinds,
            owner=owner,
        ),
        cold_ids=find_cold_entries(
            store, now,
            max_age_days=config.cold_max_age_days,
            max_hit_count=config.cold_max_hit_count,
            protected_kinds=config.protected_kinds,
            owner=owner,
        ),
    )
    logger.info(
        f"Consolidation scan: {len(report.hot_tags)} hot tag(s), "
        f"{len(report.cold_ids)} cold entr{'y' if len(report.cold_ids) == 1 else 'ies'}"
    )
    return report
