"""
Vault Data Model — Entries, Filters and Result Objects

Defines the canonical entry schema together with the request/response
objects passed between the store, the query engine and the maintenance
passes.  Entries are plain dataclasses; persistence lives in
``ctxvault.store`` and ``ctxvault.files``.

Timestamps are UTC ISO-8601 strings in a single fixed-width form
(``YYYY-MM-DDTHH:MM:SS.ffffffZ``) so that lexical order equals time order,
both in Python and in SQLite comparisons.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional

# ---------------------------------------------------------------------------
# Type aliases (Literal unions for validation)
# ---------------------------------------------------------------------------

Category = Literal["knowledge", "entity", "event"]
Tier = Literal["ephemeral", "working", "durable"]
SuggestedAction = Literal["ADD", "UPDATE", "SKIP"]
ConflictReason = Literal["superseded", "stale_duplicate"]

# Valid values for runtime checks
VALID_CATEGORIES: set = {"knowledge", "entity", "event"}
VALID_TIERS: set = {"ephemeral", "working", "durable"}

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Crockford base32, as used by ULID
_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


# ---------------------------------------------------------------------------
# Timestamps and identifiers
# ---------------------------------------------------------------------------

def format_ts(dt: datetime) -> str:
    """Render a datetime in the canonical UTC form."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_ts(value: Any) -> datetime:
    """Parse an ISO-8601 string (or date/datetime) into an aware UTC datetime.

    Accepts a trailing ``Z``, explicit offsets, naive values (taken as UTC)
    and bare dates.  Raises ValueError on anything else.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("empty timestamp")
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_ts(value: Any) -> Optional[str]:
    """Coerce a user-supplied timestamp to the canonical form (None passes)."""
    if value is None or value == "":
        return None
    return format_ts(parse_ts(value))


def _now_iso() -> str:
    """Current UTC time as canonical ISO-8601 string."""
    return format_ts(datetime.now(timezone.utc))


def _generate_id(now_ms: Optional[int] = None) -> str:
    """Generate a ULID: 48-bit millisecond timestamp + 80 random bits.

    The 26-character Crockford encoding sorts lexicographically by
    creation time.
    """
    ms = int(time.time() * 1000) if now_ms is None else now_ms
    value = ((ms & ((1 << 48) - 1)) << 80) | int.from_bytes(os.urandom(10), "big")
    chars = []
    for _ in range(26):
        chars.append(_CROCKFORD[value & 31])
        value >>= 5
    return "".join(reversed(chars))


def age_days(then: str, now: str) -> float:
    """Fractional days elapsed between two canonical timestamps (>= 0)."""
    delta = parse_ts(now) - parse_ts(then)
    return max(0.0, delta.total_seconds() / 86400.0)


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

@dataclass
class SourceFile:
    """An external file an entry was derived from, with its hash at the time."""

    path: str
    hash: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> SourceFile:
        return cls(path=str(d.get("path", "")), hash=str(d.get("hash", "")))


@dataclass
class Entry:
    """
    A stored unit of knowledge.

    ``category`` and ``tier`` are derived from the kind registry when the
    entry is written.  ``embedding`` is populated only when the caller asked
    the store to load vectors; it is never written to the markdown file.
    """

    kind: str
    body: str = ""
    title: str = ""
    id: str = field(default_factory=_generate_id)
    category: Category = "knowledge"
    tags: List[str] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    source: Optional[str] = None
    identity_key: Optional[str] = None
    owner: Optional[str] = None
    tier: Tier = "working"
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    expires_at: Optional[str] = None
    supersedes: List[str] = field(default_factory=list)
    superseded_by: Optional[str] = None
    source_files: List[SourceFile] = field(default_factory=list)
    embedding: Optional[List[float]] = None
    hit_count: int = 0
    file_path: Optional[str] = None

    @property
    def text(self) -> str:
        """Title and body joined, as embedded and compared."""
        if self.title:
            return f"{self.title}\n{self.body}"
        return self.body

    def is_expired(self, now: str) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        """Serialize to a plain dictionary (embedding omitted by default)."""
        d = asdict(self)
        if not include_embedding:
            d.pop("embedding", None)
        return d


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

@dataclass
class SearchFilters:
    """Structural filters applied to every read.

    ``tags`` uses OR semantics: an entry matches if it carries any of them.
    ``since``/``until`` bound ``created_at`` (inclusive).
    """

    kind: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    since: Optional[str] = None
    until: Optional[str] = None
    owner: Optional[str] = None
    include_superseded: bool = False
    include_ephemeral: bool = False


@dataclass
class SearchResult:
    """One ranked entry with its relative score and staleness flag."""

    entry: Entry
    score: float = 0.0
    stale: bool = False
    stale_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = self.entry.to_dict()
        d["score"] = round(self.score, 6)
        d["stale"] = self.stale
        if self.stale_reason:
            d["stale_reason"] = self.stale_reason
        return d


@dataclass
class Conflict:
    """A read-time conflict between two entries of one result set."""

    older_id: str
    newer_id: str
    reason: ConflictReason
    detail: str = ""
    recommendation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SearchResponse:
    """Outcome of a search: results plus advisory annotations."""

    results: List[SearchResult] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    reindex_failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "conflicts": [c.to_dict() for c in self.conflicts],
            "notes": list(self.notes),
            "reindex_failed": self.reindex_failed,
        }


# ---------------------------------------------------------------------------
# Save
# ---------------------------------------------------------------------------

@dataclass
class ConflictCandidate:
    """An existing entry that looks like a near-duplicate of a new one."""

    id: str
    title: str
    kind: str
    similarity: float
    suggested_action: SuggestedAction
    reasoning: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SaveResult:
    """Outcome of a save.  ``candidates`` are advisory only."""

    id: Optional[str] = None
    file_path: Optional[str] = None
    candidates: List[ConflictCandidate] = field(default_factory=list)
    suggested_action: SuggestedAction = "ADD"
    dry_run: bool = False
    updated: bool = False
    notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "file_path": self.file_path,
            "candidates": [c.to_dict() for c in self.candidates],
            "suggested_action": self.suggested_action,
            "dry_run": self.dry_run,
            "updated": self.updated,
            "notes": list(self.notes),
        }


# ---------------------------------------------------------------------------
# Maintenance results
# ---------------------------------------------------------------------------

@dataclass
class ReindexStats:
    """Result of a reindex pass."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "unchanged": self.unchanged,
        }

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = self.counts()
        d["errors"] = list(self.errors)
        return d


@dataclass
class PruneResult:
    """Result of an expiry pruning pass."""

    count: int = 0
    ids: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class HotTag:
    """A tag cluster large enough to warrant a synthesis entry."""

    tag: str
    entry_count: int
    last_synthesis_age_days: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConsolidationReport:
    """Hot tags and cold entry ids from a consolidation scan."""

    hot_tags: List[HotTag] = field(default_factory=list)
    cold_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hot_tags": [h.to_dict() for h in self.hot_tags],
            "cold_ids": list(self.cold_ids),
        }
