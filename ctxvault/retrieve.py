"""
Hybrid Retrieval — Full-text + Vector Fusion with Recency and MMR

Pipeline (one call to ``hybrid_search``):

    1. full-text candidates   tiered phrase / NEAR / AND MATCH, bm25 order
    2. vector candidates      cosine k-NN on the query embedding
    3. fusion                 Reciprocal Rank Fusion, sum of 1/(k + rank)
    4. structural filtering   kind / category / time / owner / tags (OR)
    5. recency                events decay as 1/(1 + age/decay_days)
    6. diversification        greedy MMR, lambda*rel - (1-lambda)*max_sim,
                              rel = fused score / tiers that returned it
    7. exclusions             superseded / ephemeral / expired

Ranks are 0-indexed competition ranks: candidates whose native score ties
share the rank of the first of them, so identical documents fuse to
identical scores.  Either tier may be missing; both missing yields no
results, never an error.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from collections import defaultdict
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from ctxvault.config import SearchConfig
from ctxvault.embed import Embedder
from ctxvault.query import build_fts_query, sanitize_query
from ctxvault.similarity import cosine_similarity, jaccard_sets, token_set
from ctxvault.store import VaultStore
from ctxvault.types import Entry, SearchFilters, SearchResult, age_days

logger = logging.getLogger(__name__)

NOTE_FTS_ONLY = "semantic ranking unavailable; results ranked by full-text only"
NOTE_VECTOR_FAILED = "vector search failed; results ranked by full-text only"


# ---------------------------------------------------------------------------
# Rank fusion
# ---------------------------------------------------------------------------

def competition_ranks(
    scored: Sequence[Tuple[str, float]], higher_is_better: bool = False,
) -> Dict[str, int]:
    """0-indexed competition ranks ("1224" ranking) for (id, score) pairs.

    Scores within a relative tolerance of 1e-6 count as ties.  A repeated id
    keeps its best rank.
    """
    ordered = sorted(scored, key=lambda p: p[1], reverse=higher_is_better)
    ranks: Dict[str, int] = {}
    group_score: Optional[float] = None
    group_rank = 0
    for position, (doc_id, score) in enumerate(ordered):
        if group_score is None or not math.isclose(
            score, group_score, rel_tol=1e-6, abs_tol=1e-9,
        ):
            group_score = score
            group_rank = position
        ranks.setdefault(doc_id, group_rank)
    return ranks


def rrf_fuse(rank_lists: Sequence[Dict[str, int]], k: int = 60) -> Dict[str, float]:
    """Reciprocal Rank Fusion: ``score(d) = sum over lists of 1/(k + rank)``."""
    fused: Dict[str, float] = defaultdict(float)
    for ranks in rank_lists:
        for doc_id, rank in ranks.items():
            fused[doc_id] += 1.0 / (k + rank)
    return dict(fused)


# ---------------------------------------------------------------------------
# Recency and filters
# ---------------------------------------------------------------------------

def recency_boost(entry: Entry, now: str, decay_days: float = 30.0) -> float:
    """1.0 for knowledge/entity; ``1/(1 + age_days/decay_days)`` for events."""
    if entry.category != "event":
        return 1.0
    return 1.0 / (1.0 + age_days(entry.created_at, now) / decay_days)


def matches_filters(entry: Entry, filters: SearchFilters, now: str) -> bool:
    """Python-side check of every visibility and structural filter."""
    if entry.is_expired(now):
        return False
    if entry.superseded_by and not filters.include_superseded:
        return False
    if entry.tier == "ephemeral" and not filters.include_ephemeral:
        return False
    if filters.kind and entry.kind != filters.kind:
        return False
    if filters.category and entry.category != filters.category:
        return False
    if filters.since and entry.created_at < filters.since:
        return False
    if filters.until and entry.created_at > filters.until:
        return False
    if filters.owner is not None and (entry.owner or "") != filters.owner:
        return False
    if filters.tags and not set(filters.tags) & set(entry.tags):
        return False
    return True


# ---------------------------------------------------------------------------
# MMR
# ---------------------------------------------------------------------------

def mmr_rerank(
    candidates: Sequence[Tuple[Entry, float]],
    limit: int,
    lam: float = 0.7,
    relevance: Optional[Dict[str, float]] = None,
) -> List[Tuple[Entry, float]]:
    """Greedy Maximal Marginal Relevance.

    Each step picks the candidate maximizing
    ``lam * rel - (1 - lam) * max_sim(candidate, selected)`` where ``rel`` is
    ``relevance[entry.id]`` (the score when absent) normalized by the best
    relevance.  Similarity is embedding cosine when both entries carry a
    vector, token Jaccard over title+body otherwise.  The highest-scoring
    candidate is always first.  Returned pairs keep their original
    (un-normalized) score.
    """
    if not candidates or limit <= 0:
        return []
    pool = sorted(candidates, key=lambda c: -c[1])
    rel = {e.id: (relevance or {}).get(e.id, score) for e, score in pool}
    top = max(rel.values())
    norm = top if top > 0 else 1.0
    tokens: Dict[str, FrozenSet[str]] = {}

    def _tokens(e: Entry) -> FrozenSet[str]:
        if e.id not in tokens:
            tokens[e.id] = token_set(f"{e.title} {e.body}")
        return tokens[e.id]

    def _sim(a: Entry, b: Entry) -> float:
        cos = cosine_similarity(a.embedding, b.embedding)
        if cos is not None:
            return cos
        return jaccard_sets(_tokens(a), _tokens(b))

    selected = [pool.pop(0)]
    while pool and len(selected) < limit:
        best_i = 0
        best_val = -math.inf
        for i, (entry, _score) in enumerate(pool):
            max_sim = max(_sim(entry, s[0]) for s in selected)
            val = lam * (rel[entry.id] / norm) - (1.0 - lam) * max_sim
            if val > best_val:
                best_i, best_val = i, val
        selected.append(pool.pop(best_i))
    return selected


# ---------------------------------------------------------------------------
# Hybrid search
# ---------------------------------------------------------------------------

def candidate_pool_size(want: int, config: SearchConfig) -> int:
    """Over-fetch size: ``want * multiplier`` capped at max_fetch, never < want."""
    return max(want, min(config.max_fetch, want * config.over_fetch_multiplier))


def hybrid_search(
    store: VaultStore,
    query: str,
    filters: SearchFilters,
    now: str,
    embedder: Optional[Embedder] = None,
    config: Optional[SearchConfig] = None,
    limit: int = 10,
    offset: int = 0,
    notes: Optional[List[str]] = None,
) -> List[SearchResult]:
    """Rank entries for *query* under *filters*.

    Degradation: no embedding → full-text only; vector error → empty vector
    tier; no full-text terms → vector only; neither → ``[]``.  Reasons are
    appended to *notes* when given.
    """
    config = config or SearchConfig()
    notes = notes if notes is not None else []
    want = limit + offset
    pool = candidate_pool_size(want, config)
    rank_lists: List[Dict[str, int]] = []

    terms = sanitize_query(query)
    if terms:
        fts = store.fts_candidates(
            build_fts_query(terms), filters, now, limit=pool, like_terms=terms,
        )
        rank_lists.append(competition_ranks(fts))

    vector = embedder.embed(query) if embedder is not None and query.strip() else None
    if vector is None:
        if query.strip():
            notes.append(NOTE_FTS_ONLY)
    else:
        try:
            knn = store.vector_knn(vector, pool, filters, now)
        except (sqlite3.Error, ValueError) as exc:
            logger.warning(f"Vector search failed, using full-text only: {exc}")
            notes.append(NOTE_VECTOR_FAILED)
            knn = []
        rank_lists.append(competition_ranks(knn))

    if not rank_lists:
        return []
    fused = rrf_fuse(rank_lists, k=config.rrf_k)
    if not fused:
        return []

    # MMR relevance: fused score over the number of tiers that returned the entry
    tier_hits: Dict[str, int] = defaultdict(int)
    for ranks in rank_lists:
        for doc_id in ranks:
            tier_hits[doc_id] += 1

    entries = store.get_entries(list(fused), with_embedding=True)
    candidates: List[Tuple[Entry, float]] = []
    relevance: Dict[str, float] = {}
    for doc_id, score in fused.items():
        entry = entries.get(doc_id)
        if entry is None or not matches_filters(entry, filters, now):
            continue
        boosted = score * recency_boost(entry, now, config.decay_days)
        candidates.append((entry, boosted))
        relevance[doc_id] = boosted / tier_hits[doc_id]

    ranked = mmr_rerank(candidates, want, config.mmr_lambda, relevance)
    logger.debug(
        f"hybrid_search: {len(fused)} fused, {len(candidates)} after filters, "
        f"{len(ranked)} ranked"
    )
    return [SearchResult(entry=e, score=s) for e, s in ranked[offset:offset + limit]]
