"""
Sync — Vault Scanning and Index Reconciliation

The markdown files under the vault root are the source of truth; the SQLite
index is derived from them.  ``reindex`` walks the tree and classifies each
file against the stored rows:

  1. path known, file hash unchanged        → unchanged (no parse)
  2. path known, hash changed               → parse; fields differ → updated
                                              (re-embed only if title/body
                                              changed), else unchanged
  3. path unknown, id known, old file gone  → moved; path rewritten → updated
     (or old path outside the current root)
  4. path unknown otherwise                 → added (fresh id for copies)
  5. stored path no longer on disk          → removed with its index rows

Each file is its own transaction, so a long pass never holds the write lock
for its whole duration.  A full pass ends by rebuilding the FTS5 index
from the rows.  Per-file failures are collected, never raised.
The pass is idempotent: a second run over an unchanged tree reports only
``unchanged``.

Public API:
    scan_vault(root) -> List[VaultFile]
    reindex(store, root, registry, embedder, now, full_sync=True) -> ReindexStats
"""

from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

import yaml

from ctxvault.categories import KindRegistry
from ctxvault.embed import Embedder
from ctxvault.files import SKIPPED_FILENAMES, kind_from_path, parse_entry, read_entry_file
from ctxvault.store import VaultStore
from ctxvault.types import Entry, ReindexStats, _generate_id

logger = logging.getLogger(__name__)

# Fields that make up an entry's on-disk content
_CONTENT_FIELDS = (
    "kind", "title", "body", "tags", "meta", "source", "identity_key",
    "owner", "tier", "created_at", "updated_at", "expires_at",
    "supersedes", "source_files",
)


@dataclass
class VaultFile:
    """One candidate entry file found by a scan."""
    abs_path: str
    rel_path: str
    category: str
    kind: str
    root: str = ""


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------

def scan_vault(root: str) -> List[VaultFile]:
    """List entry files under ``<root>/<category-dir>/<kind>/``.

    Directories starting with ``_`` or ``.`` are skipped, as are the
    documentation files in ``SKIPPED_FILENAMES``.
    """
    root = os.path.realpath(root)
    found: List[VaultFile] = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            d for d in dirnames if not d.startswith(("_", "."))
        )
        for fname in sorted(filenames):
            if (not fname.endswith(".md") or fname.startswith(".")
                    or fname in SKIPPED_FILENAMES):
                continue
            abs_path = os.path.join(dirpath, fname)
            located = kind_from_path(root, abs_path)
            if located is None:
                continue
            category, kind = located
            found.append(VaultFile(
                abs_path=abs_path,
                rel_path=os.path.relpath(abs_path, root),
                category=category,
                kind=kind,
                root=root,
            ))
    return found


# ---------------------------------------------------------------------------
# Reindex
# ---------------------------------------------------------------------------

def _same_content(a: Entry, b: Entry) -> bool:
    return all(getattr(a, f) == getattr(b, f) for f in _CONTENT_FIELDS)


def _embed(embedder: Optional[Embedder], entry: Entry) -> Optional[List[float]]:
    if embedder is None:
        return None
    return embedder.embed(entry.text)


def reindex(
    store: VaultStore,
    root: str,
    registry: KindRegistry,
    embedder: Optional[Embedder],
    now: str,
    full_sync: bool = True,
) -> ReindexStats:
    """Reconcile the index with the files under *root*.

    Args:
        store: Index to update.
        root: Vault root directory.
        registry: Kind registry (category and default tier per kind).
        embedder: Never-raising embedder, or None to index without vectors.
        now: Current canonical timestamp (for files lacking dates).
        full_sync: If False, only add new files (no updates, no removals,
            no full-text rebuild).

    Returns:
        ReindexStats with counts and per-file errors.
    """
    stats = ReindexStats()
    root = os.path.realpath(root)
    if not os.path.isdir(root):
        logger.warning(f"Vault root does not exist: {root}")
        return stats

    files = scan_vault(root)
    known = store.file_index()
    seen: Set[str] = set()
    claimed: Set[str] = set()
    pending: List[Tuple[str, List[str]]] = []

    for vf in files:
        seen.add(vf.abs_path)
        try:
            outcome, entry = _sync_file(
                store, vf, known, seen, registry, embedder, now, full_sync,
            )
        except (OSError, ValueError, TypeError, yaml.YAMLError, sqlite3.Error) as exc:
            logger.warning(f"Reindex failed for {vf.rel_path}: {exc}")
            stats.errors.append({"path": vf.rel_path, "error": str(exc)})
            continue
        setattr(stats, outcome, getattr(stats, outcome) + 1)
        if entry is not None:
            claimed.add(entry.id)
            if entry.supersedes:
                pending.append((entry.id, entry.supersedes))

    if full_sync:
        for path, (entry_id, _digest) in known.items():
            if path in seen or entry_id in claimed:
                continue
            try:
                if store.delete_entry(entry_id):
                    stats.removed += 1
            except sqlite3.Error as exc:
                logger.warning(f"Reindex could not remove {entry_id}: {exc}")
                stats.errors.append({"path": path, "error": str(exc)})

    for new_id, old_ids in pending:
        try:
            store.mark_superseded(old_ids, new_id)
        except sqlite3.Error as exc:
            stats.errors.append({"path": new_id, "error": str(exc)})

    if full_sync:
        try:
            store.rebuild_fts()
        except sqlite3.Error as exc:
            logger.warning(f"Reindex could not rebuild the full-text index: {exc}")
            stats.errors.append({"path": "", "error": str(exc)})

    store.set_meta("vault_root", root)
    store.set_meta("last_reindex_at", now)
    logger.info(
        f"Reindex {root}: {stats.added} added, {stats.updated} updated, "
        f"{stats.removed} removed, {stats.unchanged} unchanged, "
        f"{len(stats.errors)} errors"
    )
    return stats


def _sync_file(
    store: VaultStore,
    vf: VaultFile,
    known: Dict[str, Tuple[str, Optional[str]]],
    seen: Set[str],
    registry: KindRegistry,
    embedder: Optional[Embedder],
    now: str,
    full_sync: bool,
) -> Tuple[str, Optional[Entry]]:
    """Reconcile one file.  Returns (outcome, entry-as-indexed)."""
    stored = known.get(vf.abs_path)
    if stored is not None:
        stored_id, stored_hash = stored
        if not full_sync:
            return "unchanged", None
        text, digest = read_entry_file(vf.abs_path)
        if digest == stored_hash:
            return "unchanged", store.get_entry(stored_id)
        existing = store.get_entry(stored_id)
        entry = parse_entry(text, vf.kind, registry, now, entry_id=stored_id)
        entry.id = stored_id
        return _apply_update(store, existing, entry, vf.abs_path, digest, embedder)

    text, digest = read_entry_file(vf.abs_path)
    entry = parse_entry(text, vf.kind, registry, now)
    existing = store.get_entry(entry.id)
    if existing is not None:
        old_path = existing.file_path
        moved = (
            old_path is None
            or not old_path.startswith(vf.root + os.sep)
            or (old_path not in seen and not os.path.exists(old_path))
        )
        if moved:
            if not full_sync:
                return "unchanged", None
            logger.debug(f"Entry {entry.id} moved: {old_path} -> {vf.abs_path}")
            return _apply_update(
                store, existing, entry, vf.abs_path, digest, embedder, moved=True,
            )
        # A copy of another entry's file: index it under a fresh id
        entry.id = _generate_id()

    entry.file_path = vf.abs_path
    entry.embedding = _embed(embedder, entry)
    store.insert_entry(entry, file_hash=digest)
    return "added", entry


def _apply_update(
    store: VaultStore,
    existing: Optional[Entry],
    entry: Entry,
    path: str,
    digest: str,
    embedder: Optional[Embedder],
    moved: bool = False,
) -> Tuple[str, Entry]:
    if existing is None:
        raise ValueError(f"indexed entry vanished during reindex: {entry.id}")
    entry.superseded_by = existing.superseded_by
    entry.hit_count = existing.hit_count
    entry.file_path = path
    if not moved and _same_content(existing, entry):
        store.set_file_info(entry.id, path, digest)
        return "unchanged", entry
    reembed = existing.title != entry.title or existing.body != entry.body
    if reembed:
        entry.embedding = _embed(embedder, entry)
    store.update_entry(entry, file_hash=digest, reembed=reembed)
    return "updated", entry
