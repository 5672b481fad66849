"""
Vault — the context object behind every public operation

A ``Vault`` bundles the index store, the vault root, the configuration, the
kind registry, the (timeout-bounded) embedder and a clock.  It is built
once per process and passed around explicitly; nothing here is global.

Operations:
    save / update / delete / get / get_by_identity
    search                 hybrid retrieval + staleness + conflicts
    reindex                reconcile the index with the files on disk
    prune                  physically remove expired entries
    consolidation_scan     hot tags and cold entries
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import threading
import warnings
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from ctxvault.categories import KindRegistry
from ctxvault.config import VaultConfig
from ctxvault.conflicts import build_conflict_candidates, find_similar
from ctxvault.conflicts import detect_conflicts as find_conflicts
from ctxvault.consolidate import consolidation_scan
from ctxvault.embed import BoundedEmbedder, Embedder, SentenceTransformerEmbedder
from ctxvault.errors import (
    ConsistencyWarning,
    NotFoundError,
    ValidationError,
    VaultError,
    VaultIOError,
)
from ctxvault.files import entry_path, file_sha256, remove_entry_file, write_entry_file
from ctxvault.prune import prune_expired
from ctxvault.retrieve import hybrid_search
from ctxvault.staleness import annotate_staleness, resolve_source_path
from ctxvault.store import VaultStore
from ctxvault.sync import reindex as reindex_vault
from ctxvault.types import (
    VALID_TIERS,
    ConsolidationReport,
    Entry,
    PruneResult,
    ReindexStats,
    SaveResult,
    SearchFilters,
    SearchResponse,
    SearchResult,
    SourceFile,
    _generate_id,
    _now_iso,
    normalize_ts,
    parse_ts,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Input limits
# ---------------------------------------------------------------------------

MAX_BODY_BYTES = 100 * 1024
MAX_TITLE_LENGTH = 500
MAX_KIND_LENGTH = 64
MAX_TAG_LENGTH = 100
MAX_TAGS = 20
MAX_META_BYTES = 10 * 1024
MAX_SOURCE_LENGTH = 200
MAX_IDENTITY_KEY_LENGTH = 200

_KIND_RE = re.compile(r"^[a-z][a-z0-9_-]*$")

# Fields update() accepts; anything else is a ValidationError
_UPDATABLE = frozenset({
    "title", "body", "tags", "meta", "source", "identity_key", "tier",
    "expires_at", "source_files", "supersedes",
})

# Maximum lazy reindex attempts before a vault is flagged as failing
_MAX_REINDEX_ATTEMPTS = 2


def _check_len(name: str, value: Optional[str], limit: int) -> None:
    if value is not None and len(value) > limit:
        raise ValidationError(f"{name} exceeds {limit} characters")


def _validate_kind(kind: Any) -> str:
    if not isinstance(kind, str) or not kind:
        raise ValidationError("kind is required")
    _check_len("kind", kind, MAX_KIND_LENGTH)
    if not _KIND_RE.match(kind):
        raise ValidationError(
            f"invalid kind {kind!r}: must match ^[a-z][a-z0-9_-]*$"
        )
    return kind


def _validate_tags(tags: Any) -> List[str]:
    if tags is None:
        return []
    if isinstance(tags, str) or not isinstance(tags, (list, tuple, set, frozenset)):
        raise ValidationError("tags must be a list of strings")
    out: List[str] = []
    for tag in tags:
        if not isinstance(tag, str) or not tag.strip():
            raise ValidationError("tags must be non-empty strings")
        tag = tag.strip()
        _check_len(f"tag {tag[:20]!r}", tag, MAX_TAG_LENGTH)
        if tag not in out:
            out.append(tag)
    if len(out) > MAX_TAGS:
        raise ValidationError(f"too many tags ({len(out)} > {MAX_TAGS})")
    return out


def _validate_meta(meta: Any) -> Dict[str, Any]:
    if meta is None:
        return {}
    if not isinstance(meta, dict):
        raise ValidationError("meta must be an object")
    try:
        size = len(json.dumps(meta).encode("utf-8"))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"meta is not JSON-serializable: {exc}") from exc
    if size > MAX_META_BYTES:
        raise ValidationError(f"meta exceeds {MAX_META_BYTES} bytes")
    return meta


def _validate_body(body: Any, required: bool = True) -> str:
    if body is None:
        body = ""
    if not isinstance(body, str):
        raise ValidationError("body must be a string")
    body = body.strip()
    if required and not body:
        raise ValidationError("body is required")
    if len(body.encode("utf-8")) > MAX_BODY_BYTES:
        raise ValidationError(f"body exceeds {MAX_BODY_BYTES} bytes")
    return body


def _validate_expiry(value: Any) -> Optional[str]:
    try:
        return normalize_ts(value)
    except ValueError as exc:
        raise ValidationError(f"invalid expires_at {value!r}: {exc}") from exc


class Vault:
    """Explicit context for all vault operations."""

    def __init__(
        self,
        store: VaultStore,
        root: str,
        config: Optional[VaultConfig] = None,
        registry: Optional[KindRegistry] = None,
        embedder: Optional[Embedder] = None,
        clock: Optional[Callable[[], str]] = None,
    ):
        """
        Args:
            store: Open index store.
            root: Vault root directory (created if missing).
            config: Configuration (compiled defaults if None).
            registry: Kind registry (defaults plus ``config.kinds``).
            embedder: Raw embedder; wrapped in a BoundedEmbedder here.
                None runs without semantic ranking.
            clock: Callable returning the current canonical timestamp.
        """
        self.config = config or VaultConfig()
        self.store = store
        self.root = os.path.realpath(os.path.expanduser(root))
        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as exc:
            raise VaultIOError(f"Cannot create vault root {self.root}: {exc}") from exc
        self.registry = registry or KindRegistry()
        for kind, spec in self.config.kinds.items():
            try:
                self.registry.register(_validate_kind(kind), **spec)
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Invalid kind definition {kind!r}: {exc}") from exc
        self.embedder = BoundedEmbedder(embedder, timeout_s=self.config.embed.timeout_s)
        self.clock = clock or _now_iso
        self.last_consolidation: Optional[ConsolidationReport] = None
        self._reindex_lock = threading.Lock()
        self._reindex_attempts = 0
        self._reindex_failed = False
        self._bg_executor: Optional[ThreadPoolExecutor] = None
        self._bg_future: Optional[Future] = None

    @classmethod
    def open(
        cls,
        config: Optional[VaultConfig] = None,
        *,
        vault_dir: Optional[str] = None,
        db_path: Optional[str] = None,
        embedder: Optional[Embedder] = None,
        clock: Optional[Callable[[], str]] = None,
    ) -> Vault:
        """Open the store and vault from configuration.

        Without an explicit *embedder* a sentence-transformers model is used
        when ``config.embed.enabled``.  Expired entries are pruned on open
        when ``config.vault.prune_on_open``.
        """
        config = config or VaultConfig()
        root = vault_dir or config.vault.vault_dir
        store = VaultStore(
            db_path=os.path.expanduser(db_path or config.store.db_path),
            wal_mode=config.store.wal_mode,
            fts_tokenizer=config.store.fts_tokenizer,
            busy_timeout_ms=config.store.busy_timeout_ms,
        )
        if embedder is None and config.embed.enabled:
            embedder = SentenceTransformerEmbedder(config.embed.model_name)
        vault = cls(store, root, config=config, embedder=embedder, clock=clock)
        if config.vault.prune_on_open:
            vault.prune()
        return vault

    def close(self) -> None:
        """Stop background work and close the store."""
        if self._bg_executor is not None:
            self._bg_executor.shutdown(wait=True)
            self._bg_executor = None
        self.embedder.close()
        self.store.close()

    def __enter__(self) -> Vault:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- Helpers -----------------------------------------------------------

    def _new_id(self, now: str) -> str:
        return _generate_id(int(parse_ts(now).timestamp() * 1000))

    def _source_files(self, value: Any) -> List[SourceFile]:
        """Validate source files; a missing hash is computed now."""
        if value is None:
            return []
        if not isinstance(value, (list, tuple)):
            raise ValidationError("source_files must be a list of {path, hash}")
        out: List[SourceFile] = []
        for item in value:
            if isinstance(item, SourceFile):
                sf = item
            elif isinstance(item, dict) and item.get("path"):
                sf = SourceFile.from_dict(item)
            elif isinstance(item, str) and item:
                sf = SourceFile(path=item, hash="")
            else:
                raise ValidationError(f"invalid source file entry: {item!r}")
            if not sf.hash:
                path = resolve_source_path(sf.path, self.config.vault.source_root)
                try:
                    sf = SourceFile(path=sf.path, hash=file_sha256(path))
                except OSError as exc:
                    raise ValidationError(
                        f"cannot hash source file {sf.path}: {exc}"
                    ) from exc
            out.append(sf)
        return out

    def _visible(self, entry: Optional[Entry], now: str) -> bool:
        return entry is not None and not entry.is_expired(now)

    def _drop_expired(self, entry: Entry) -> None:
        self.store.delete_entry(entry.id)
        try:
            remove_entry_file(entry.file_path)
        except OSError as exc:
            raise VaultIOError(f"Cannot remove expired {entry.file_path}: {exc}") from exc
        logger.debug(f"Dropped expired {entry.kind} {entry.id} before re-save")

    # -- Writes ------------------------------------------------------------

    def save(
        self,
        kind: str,
        body: str,
        title: str = "",
        tags: Optional[Iterable[str]] = None,
        meta: Optional[Dict[str, Any]] = None,
        source: Optional[str] = None,
        identity_key: Optional[str] = None,
        owner: Optional[str] = None,
        tier: Optional[str] = None,
        expires_at: Optional[str] = None,
        supersedes: Optional[Iterable[str]] = None,
        source_files: Optional[List[Any]] = None,
        folder: Optional[str] = None,
        dry_run: bool = False,
        similarity_threshold: Optional[float] = None,
    ) -> SaveResult:
        """Create an entry (or upsert an identity-keyed one).

        Near-duplicate candidates are computed for knowledge and event
        entries and returned as advice; they never block the write.  With
        *dry_run* nothing is written and only the advice is returned.

        Raises:
            ValidationError: malformed or oversized input (before any I/O).
            VaultIOError: the markdown file could not be written.
        """
        kind = _validate_kind(kind)
        body = _validate_body(body)
        title = (title or "").strip()
        _check_len("title", title, MAX_TITLE_LENGTH)
        tags = _validate_tags(list(tags) if tags is not None else None)
        meta = _validate_meta(meta)
        _check_len("source", source, MAX_SOURCE_LENGTH)
        _check_len("identity_key", identity_key, MAX_IDENTITY_KEY_LENGTH)
        expires = _validate_expiry(expires_at)
        spec = self.registry.spec(kind)
        tier = tier or spec.default_tier
        if tier not in VALID_TIERS:
            raise ValidationError(f"invalid tier {tier!r}")
        if spec.category == "entity" and not identity_key:
            raise ValidationError(f"kind {kind!r} is an entity and requires identity_key")
        supersedes = [s for s in (supersedes or []) if s]
        sources = self._source_files(source_files)

        if identity_key:
            existing = self.store.get_by_identity(kind, identity_key, owner)
            if existing is not None and existing.is_expired(self.clock()):
                # expired but not yet pruned: the new save replaces it
                if not dry_run:
                    self._drop_expired(existing)
                existing = None
            if existing is not None:
                if dry_run:
                    return SaveResult(
                        id=existing.id, file_path=existing.file_path,
                        suggested_action="UPDATE", dry_run=True, updated=True,
                    )
                changes: Dict[str, Any] = {
                    "title": title or existing.title, "body": body,
                    "tags": tags, "meta": meta, "tier": tier,
                    "expires_at": expires, "source_files": sources,
                }
                if source is not None:
                    changes["source"] = source
                entry = self.update(existing.id, **changes)
                return SaveResult(
                    id=entry.id, file_path=entry.file_path,
                    suggested_action="UPDATE", updated=True,
                )

        now = self.clock()
        entry = Entry(
            id=self._new_id(now),
            kind=kind,
            category=spec.category,
            title=title,
            body=body,
            tags=tags,
            meta=meta,
            source=source,
            identity_key=identity_key,
            owner=owner,
            tier=tier,
            created_at=now,
            updated_at=now,
            expires_at=expires,
            supersedes=supersedes,
            source_files=sources,
        )
        result = SaveResult(dry_run=dry_run)
        embedding = self.embedder.embed(entry.text)
        if embedding is None:
            result.notes.append("embedding unavailable; saved without similarity check")
        elif spec.category != "entity":
            dedup = self.config.dedup
            threshold = (
                similarity_threshold if similarity_threshold is not None
                else dedup.update_threshold
            )
            try:
                similar = find_similar(
                    self.store, embedding, now,
                    threshold=threshold, owner=owner, k=dedup.knn,
                )
            except (sqlite3.Error, ValueError) as exc:
                logger.warning(f"Similarity check failed: {exc}")
                result.notes.append("similarity check failed")
                similar = []
            result.candidates = build_conflict_candidates(
                similar, dedup.skip_threshold, dedup.update_threshold,
            )
            if result.candidates:
                result.suggested_action = result.candidates[0].suggested_action
        if dry_run:
            return result

        entry.embedding = embedding
        path = entry_path(self.root, self.registry, entry, folder)
        try:
            digest = write_entry_file(path, entry)
        except OSError as exc:
            raise VaultIOError(f"Cannot write {path}: {exc}") from exc
        entry.file_path = path
        try:
            self.store.insert_entry(entry, file_hash=digest)
        except sqlite3.IntegrityError as exc:
            remove_entry_file(path)
            raise ValidationError(f"Entry conflicts with an existing one: {exc}") from exc
        except BaseException:
            remove_entry_file(path)
            raise

        if supersedes:
            marked = self.store.mark_superseded(supersedes, entry.id)
            for old_id in supersedes:
                if old_id not in marked:
                    result.notes.append(
                        f"{old_id} not marked superseded (unknown or already superseded)"
                    )
        result.id = entry.id
        result.file_path = path
        logger.debug(f"Saved {entry.kind} {entry.id} -> {path}")
        return result

    def update(self, entry_id: str, **changes: Any) -> Entry:
        """Merge *changes* into an entry; omitted fields are preserved.

        Accepted fields: title, body, tags, meta, source, identity_key, tier,
        expires_at, source_files, supersedes.  ``identity_key`` may only be
        repeated unchanged; re-keying means delete and re-create.  Ids in
        ``supersedes`` are added to the existing list and marked superseded
        by this entry.  The embedding is recomputed only when the title or
        body changes.

        Raises:
            NotFoundError: unknown (or expired) id.
            ValidationError: unknown field or invalid value.
        """
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValidationError(f"cannot update field(s): {', '.join(sorted(unknown))}")
        now = self.clock()
        existing = self.store.get_entry(entry_id)
        if not self._visible(existing, now):
            raise NotFoundError(f"Entry not found: {entry_id}")

        fields: Dict[str, Any] = {}
        if "title" in changes and changes["title"] is not None:
            fields["title"] = str(changes["title"]).strip()
            _check_len("title", fields["title"], MAX_TITLE_LENGTH)
        if "body" in changes and changes["body"] is not None:
            fields["body"] = _validate_body(changes["body"])
        if "tags" in changes and changes["tags"] is not None:
            fields["tags"] = _validate_tags(list(changes["tags"]))
        if "meta" in changes and changes["meta"] is not None:
            fields["meta"] = _validate_meta(changes["meta"])
        if "source" in changes:
            _check_len("source", changes["source"], MAX_SOURCE_LENGTH)
            fields["source"] = changes["source"]
        if "identity_key" in changes and changes["identity_key"] != existing.identity_key:
            raise ValidationError(
                f"Cannot change identity_key of {entry_id} "
                f"({existing.identity_key!r} -> {changes['identity_key']!r}); "
                f"delete and re-create instead"
            )
        if "tier" in changes and changes["tier"] is not None:
            if changes["tier"] not in VALID_TIERS:
                raise ValidationError(f"invalid tier {changes['tier']!r}")
            fields["tier"] = changes["tier"]
        if "expires_at" in changes:
            fields["expires_at"] = _validate_expiry(changes["expires_at"])
        if "source_files" in changes and changes["source_files"] is not None:
            fields["source_files"] = self._source_files(changes["source_files"])
        new_supersedes: List[str] = []
        if changes.get("supersedes"):
            if isinstance(changes["supersedes"], str):
                raise ValidationError("supersedes must be a list of ids")
            new_supersedes = [
                s for s in changes["supersedes"]
                if s and s != entry_id and s not in existing.supersedes
            ]
            fields["supersedes"] = list(existing.supersedes) + new_supersedes

        entry = replace(existing, updated_at=now, **fields)
        reembed = entry.title != existing.title or entry.body != existing.body
        entry.embedding = self.embedder.embed(entry.text) if reembed else None

        path = existing.file_path or entry_path(self.root, self.registry, entry)
        try:
            digest = write_entry_file(path, entry)
        except OSError as exc:
            raise VaultIOError(f"Cannot write {path}: {exc}") from exc
        entry.file_path = path
        try:
            self.store.update_entry(entry, file_hash=digest, reembed=reembed)
        except sqlite3.IntegrityError as exc:
            self._restore_file(path, existing)
            raise ValidationError(f"Update conflicts with an existing entry: {exc}") from exc
        except BaseException:
            self._restore_file(path, existing)
            raise
        if new_supersedes:
            marked = self.store.mark_superseded(new_supersedes, entry.id)
            for old_id in new_supersedes:
                if old_id not in marked:
                    logger.warning(
                        f"{old_id} not marked superseded (unknown or already superseded)"
                    )
        return entry

    def _restore_file(self, path: str, previous: Entry) -> None:
        """Put the previous file content back after a failed index update."""
        if previous.file_path is None:
            remove_entry_file(path)
        else:
            write_entry_file(path, previous)

    def delete(self, entry_id: str) -> bool:
        """Delete an entry, its index rows and its file.

        Raises:
            NotFoundError: unknown id.
        """
        existing = self.store.get_entry(entry_id)
        if existing is None:
            raise NotFoundError(f"Entry not found: {entry_id}")
        self.store.delete_entry(entry_id)
        try:
            remove_entry_file(existing.file_path)
        except OSError as exc:
            raise VaultIOError(
                f"Entry {entry_id} deleted from index but file removal failed: {exc}"
            ) from exc
        return True

    # -- Reads -------------------------------------------------------------

    def get(self, entry_id: str) -> Entry:
        """Entry by id.  Expired entries count as missing."""
        entry = self.store.get_entry(entry_id)
        if not self._visible(entry, self.clock()):
            raise NotFoundError(f"Entry not found: {entry_id}")
        return entry

    def get_by_identity(
        self, kind: str, identity_key: str, owner: Optional[str] = None,
    ) -> Entry:
        entry = self.store.get_by_identity(kind, identity_key, owner)
        if not self._visible(entry, self.clock()):
            raise NotFoundError(f"No {kind} with identity_key {identity_key!r}")
        return entry

    def search(
        self,
        query: str = "",
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
        offset: int = 0,
        detect_conflicts: bool = True,
    ) -> SearchResponse:
        """Hybrid search annotated with staleness flags and conflicts.

        A blank query lists entries matching *filters*, newest first, with
        score 0.  Ranking degradation is reported in ``notes``; it never
        raises.
        """
        filters = filters or SearchFilters()
        limit = limit if limit is not None else self.config.search.default_limit
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be > 0 and offset >= 0")
        try:
            since = normalize_ts(filters.since)
            until = normalize_ts(filters.until)
        except ValueError as exc:
            raise ValidationError(f"invalid time range: {exc}") from exc
        filters = replace(filters, since=since, until=until)

        response = SearchResponse()
        self.ensure_indexed(response)
        now = self.clock()
        query = query or ""
        if query.strip():
            response.results = hybrid_search(
                self.store, query, filters, now,
                embedder=self.embedder,
                config=self.config.search,
                limit=limit, offset=offset,
                notes=response.notes,
            )
        else:
            response.results = [
                SearchResult(entry=e, score=0.0)
                for e in self.store.list_entries(filters, now, limit, offset)
            ]

        annotate_staleness(
            response.results, self.registry, now, self.config.vault.source_root,
        )
        if detect_conflicts:
            response.conflicts = find_conflicts(
                [r.entry for r in response.results],
                self.config.conflicts.stale_duplicate_days,
            )
        try:
            self.store.record_hits([r.entry.id for r in response.results], now)
        except sqlite3.Error as exc:
            logger.warning(f"Could not record hits: {exc}")
        if self.config.consolidate.auto_scan:
            self.schedule_consolidation_scan()
        return response

    # -- Maintenance -------------------------------------------------------

    def ensure_indexed(self, response: Optional[SearchResponse] = None) -> None:
        """Reindex lazily when stored paths do not match the vault root."""
        if not self.config.vault.auto_reindex:
            return
        if self._reindex_failed:
            if response is not None:
                response.reindex_failed = True
            return
        stored_root = self.store.get_meta("vault_root")
        if stored_root == self.root and self.store.count_outside(self.root) == 0:
            return
        if stored_root is not None:
            warnings.warn(
                f"Index was built for {stored_root}, vault root is {self.root}; reindexing",
                ConsistencyWarning,
                stacklevel=3,
            )
        self._reindex_attempts += 1
        try:
            self.reindex()
        except (OSError, sqlite3.Error, VaultError) as exc:
            logger.error(f"Lazy reindex failed (attempt {self._reindex_attempts}): {exc}")
            if self._reindex_attempts >= _MAX_REINDEX_ATTEMPTS:
                self._reindex_failed = True
            if response is not None:
                response.reindex_failed = True
                response.notes.append(f"reindex failed: {exc}")

    def reindex(self, full_sync: bool = True) -> ReindexStats:
        """Reconcile the index with the markdown files under the vault root."""
        with self._reindex_lock:
            return reindex_vault(
                self.store, self.root, self.registry, self.embedder,
                self.clock(), full_sync=full_sync,
            )

    def prune(self, dry_run: bool = False) -> PruneResult:
        """Physically remove expired entries."""
        return prune_expired(self.store, self.clock(), dry_run=dry_run)

    def consolidation_scan(self, owner: Optional[str] = None) -> ConsolidationReport:
        """Hot tags and cold entry ids across the vault."""
        report = consolidation_scan(
            self.store, self.clock(), self.config.consolidate, owner=owner,
        )
        self.last_consolidation = report
        return report

    def schedule_consolidation_scan(self) -> Optional[Future]:
        """Run a consolidation scan on a background thread (fire and forget).

        At most one scan is in flight; returns its future, or None if one
        was already running.
        """
        if self._bg_future is not None and not self._bg_future.done():
            return None
        if self._bg_executor is None:
            self._bg_executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="ctxvault-consolidate",
            )
        self._bg_future = self._bg_executor.submit(self._background_scan)
        return self._bg_future

    def _background_scan(self) -> Optional[ConsolidationReport]:
        try:
            return self.consolidation_scan()
        except (sqlite3.Error, VaultError) as exc:
            logger.warning(f"Background consolidation scan failed: {exc}")
            return None

    def stats(self) -> Dict[str, Any]:
        """Index statistics plus vault-level state."""
        stats = self.store.stats(self.clock())
        stats["vault_root_configured"] = self.root
        stats["embedding_available"] = self.embedder.available
        stats["reindex_failed"] = self._reindex_failed
        return stats
