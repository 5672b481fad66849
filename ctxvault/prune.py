"""
Expiry pruning.

Expired entries are already invisible to every read; pruning removes them
physically.  Each entry is deleted in its own transaction (relational,
full-text, vector and tag rows together) and its file is unlinked
afterwards, so a concurrent reader never sees a half-deleted entry.
"""

from __future__ import annotations

import logging
import sqlite3

from ctxvault.files import remove_entry_file
from ctxvault.store import VaultStore
from ctxvault.types import PruneResult

logger = logging.getLogger(__name__)


def prune_expired(store: VaultStore, now: str, dry_run: bool = False) -> PruneResult:
    """Delete every entry whose ``expires_at`` is at or before *now*."""
    result = PruneResult(dry_run=dry_run)
    expired = store.expired_ids(now)
    if dry_run:
        result.ids = expired
        result.count = len(expired)
        return result

    for entry_id in expired:
        try:
            entry = store.get_entry(entry_id)
            if entry is None or not store.delete_entry(entry_id):
                continue
        except sqlite3.Error as exc:
            logger.warning(f"Could not prune {entry_id}: {exc}")
            result.errors.append({"id": entry_id, "error": str(exc)})
            continue
        result.ids.append(entry_id)
        result.count += 1
        try:
            remove_entry_file(entry.file_path)
        except OSError as exc:
            logger.warning(
                f"Pruned {entry_id} but could not remove {entry.file_path}: {exc}"
            )
            result.errors.append({"id": entry_id, "error": str(exc)})

    if result.count:
        suffix = "y" if result.count == 1 else "ies"
        logger.info(f"Pruned {result.count} expired entr{suffix}")
    return result
