"""
Staleness tracking for entries derived from external files.

An entry records ``source_files`` as (path, sha256) pairs at the time it
was written.  At read time each pair is re-checked; the first mismatch is
reported.  Unreadable files are skipped (best effort).
"""

from __future__ import annotations

import logging
import os
from typing import Optional, Sequence

from ctxvault.categories import KindRegistry
from ctxvault.files import file_sha256
from ctxvault.types import Entry, SearchResult, age_days

logger = logging.getLogger(__name__)

REASON_MISSING = "source file not found"
REASON_MODIFIED = "source file modified since observation"


def _bare_hash(value: str) -> str:
    """Accept both ``<hex>`` and ``sha256:<hex>``."""
    value = value.strip().lower()
    return value.split(":", 1)[1] if value.startswith("sha256:") else value


def resolve_source_path(path: str, base_dir: Optional[str] = None) -> str:
    """Relative paths resolve against *base_dir* (default: the cwd)."""
    path = os.path.expanduser(path)
    if os.path.isabs(path):
        return path
    return os.path.join(base_dir or os.getcwd(), path)


def check_staleness(entry: Entry, base_dir: Optional[str] = None) -> Optional[str]:
    """Reason the entry's source files drifted, or None if they still match."""
    for sf in entry.source_files:
        path = resolve_source_path(sf.path, base_dir)
        try:
            digest = file_sha256(path)
        except FileNotFoundError:
            return REASON_MISSING
        except OSError as exc:
            logger.debug(f"Skipping unreadable source file {path}: {exc}")
            continue
        if sf.hash and digest != _bare_hash(sf.hash):
            return REASON_MODIFIED
    return None


def check_review_age(
    entry: Entry, registry: KindRegistry, now: str,
) -> Optional[str]:
    """Reason the entry is past its kind's review window, or None."""
    window = registry.staleness_days(entry.kind)
    if window is None:
        return None
    days = age_days(entry.updated_at, now)
    if days > window:
        return f"not updated in {int(days)} days (review window {window} days)"
    return None


def annotate_staleness(
    results: Sequence[SearchResult],
    registry: KindRegistry,
    now: str,
    base_dir: Optional[str] = None,
) -> None:
    """Set ``stale``/``stale_reason`` on each result in place."""
    for result in results:
        reason = check_staleness(result.entry, base_dir)
        if reason is None:
            reason = check_review_age(result.entry, registry, now)
        result.stale = reason is not None
        result.stale_reason = reason
