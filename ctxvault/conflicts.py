"""
Duplicate and Conflict Detection

Write time (advisory, never blocks a save):
    find_similar()               k-NN over same-owner, non-entity vectors
    build_conflict_candidates()  SKIP >= 0.95 > UPDATE >= 0.85 > ADD

Read time (over an already-fetched result set, no queries):
    detect_conflicts()           supersession and stale duplicates
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Set, Tuple

from ctxvault.store import VaultStore
from ctxvault.types import (
    Conflict,
    ConflictCandidate,
    Entry,
    SearchFilters,
    SuggestedAction,
    age_days,
)

logger = logging.getLogger(__name__)


def suggest_action(
    similarity: float, skip_threshold: float = 0.95, update_threshold: float = 0.85,
) -> SuggestedAction:
    if similarity >= skip_threshold:
        return "SKIP"
    if similarity >= update_threshold:
        return "UPDATE"
    return "ADD"


def find_similar(
    store: VaultStore,
    embedding: Sequence[float],
    now: str,
    threshold: float = 0.85,
    owner: Optional[str] = None,
    k: int = 10,
) -> List[Tuple[Entry, float]]:
    """Existing entries whose cosine similarity to *embedding* is >= threshold.

    Only the same owner's live, non-superseded, non-entity entries are
    considered.  Results are sorted by similarity, highest first.
    """
    filters = SearchFilters(owner=owner or "", include_ephemeral=True)
    neighbours = store.vector_knn(
        embedding, k, filters, now, exclude_categories=("entity",),
    )
    hits = [(doc_id, 1.0 - distance) for doc_id, distance in neighbours]
    hits = [(doc_id, sim) for doc_id, sim in hits if sim >= threshold]
    if not hits:
        return []
    entries = store.get_entries([doc_id for doc_id, _ in hits])
    return [(entries[doc_id], sim) for doc_id, sim in hits if doc_id in entries]


def build_conflict_candidates(
    similar: Sequence[Tuple[Entry, float]],
    skip_threshold: float = 0.95,
    update_threshold: float = 0.85,
) -> List[ConflictCandidate]:
    """Turn (entry, similarity) pairs into advisory candidates with reasoning."""
    candidates: List[ConflictCandidate] = []
    for entry, sim in similar:
        action = suggest_action(sim, skip_threshold, update_threshold)
        label = f"{entry.kind} '{entry.title or entry.id}'"
        if action == "SKIP":
            reasoning = (
                f"Near-identical to existing {label} (similarity {sim:.2f}); "
                "saving would create a duplicate."
            )
        elif action == "UPDATE":
            reasoning = (
                f"Overlaps existing {label} (similarity {sim:.2f}); "
                "consider updating it instead of adding a new entry."
            )
        else:
            reasoning = f"Related to existing {label} (similarity {sim:.2f})."
        candidates.append(ConflictCandidate(
            id=entry.id,
            title=entry.title,
            kind=entry.kind,
            similarity=round(sim, 4),
            suggested_action=action,
            reasoning=reasoning,
        ))
    candidates.sort(key=lambda c: -c.similarity)
    return candidates


def detect_conflicts(
    entries: Sequence[Entry], stale_duplicate_days: float = 7.0,
) -> List[Conflict]:
    """Supersession and stale-duplicate conflicts within one result set.

    A pair already reported as a supersession is not reported again as a
    stale duplicate.
    """
    conflicts: List[Conflict] = []
    by_id = {e.id: e for e in entries}
    reported: Set[frozenset] = set()

    for entry in entries:
        newer_id = entry.superseded_by
        if newer_id and newer_id in by_id and newer_id != entry.id:
            conflicts.append(Conflict(
                older_id=entry.id,
                newer_id=newer_id,
                reason="superseded",
                detail=f"{entry.id} was superseded by {newer_id}",
                recommendation=f"Use {newer_id}; {entry.id} is obsolete.",
            ))
            reported.add(frozenset((entry.id, newer_id)))

    ordered = list(entries)
    for i, a in enumerate(ordered):
        for b in ordered[i + 1:]:
            pair = frozenset((a.id, b.id))
            if pair in reported or a.kind != b.kind:
                continue
            shared = sorted(set(a.tags) & set(b.tags))
            if not shared:
                continue
            older, newer = (a, b) if a.updated_at <= b.updated_at else (b, a)
            gap = age_days(older.updated_at, newer.updated_at)
            if gap <= stale_duplicate_days:
                continue
            conflicts.append(Conflict(
                older_id=older.id,
                newer_id=newer.id,
                reason="stale_duplicate",
                detail=(
                    f"same kind '{a.kind}', shared tags {', '.join(shared)}, "
                    f"updated {gap:.0f} days apart"
                ),
                recommendation=(
                    f"Prefer the newer entry {newer.id}; review or supersede "
                    f"{older.id}."
                ),
            ))
            reported.add(pair)
    return conflicts
