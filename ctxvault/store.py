"""
Vault Store — SQLite Index Backend

Tables:
    vault          - One relational row per live entry (``seq`` is the
                     internal join key, ``id`` the public ULID)
    vault_fts      - FTS5 external-content index over title/body/tags/kind
    vault_vec      - float32 embedding per entry, keyed by ``seq``
    entry_tags     - (seq, tag) join table for tag filters and counts
    schema_meta    - key/value metadata (schema version, vault root, ...)

The index is derived state: the markdown files under the vault root are the
source of truth and ``ctxvault.sync.reindex`` can rebuild everything here.

Every create/update/delete runs inside one ``BEGIN IMMEDIATE`` transaction
covering the relational, full-text, vector and tag rows.  FTS rows follow
via triggers; vector and tag rows follow via ``ON DELETE CASCADE``.

Thread safety: uses sqlite3 check_same_thread=False with explicit serialization.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from ctxvault.types import Entry, SearchFilters, SourceFile, _now_iso

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS vault (
    seq            INTEGER PRIMARY KEY AUTOINCREMENT,
    id             TEXT NOT NULL UNIQUE,
    kind           TEXT NOT NULL,
    category       TEXT NOT NULL DEFAULT 'knowledge',
    title          TEXT NOT NULL DEFAULT '',
    body           TEXT NOT NULL DEFAULT '',
    tags           TEXT NOT NULL DEFAULT '[]',      -- JSON array (mirrors entry_tags)
    meta           TEXT NOT NULL DEFAULT '{}',      -- JSON object
    source         TEXT,
    identity_key   TEXT,
    owner          TEXT NOT NULL DEFAULT '',        -- '' = local owner
    tier           TEXT NOT NULL DEFAULT 'working'
                   CHECK(tier IN ('ephemeral','working','durable')),
    created_at     TEXT NOT NULL,
    updated_at     TEXT NOT NULL,
    expires_at     TEXT,
    supersedes     TEXT NOT NULL DEFAULT '[]',      -- JSON array of ids
    superseded_by  TEXT,
    source_files   TEXT NOT NULL DEFAULT '[]',      -- JSON array of {path, hash}
    hit_count      INTEGER NOT NULL DEFAULT 0,
    last_hit_at    TEXT,
    file_path      TEXT UNIQUE,
    file_hash      TEXT
);

CREATE TABLE IF NOT EXISTS vault_vec (
    seq        INTEGER PRIMARY KEY REFERENCES vault(seq) ON DELETE CASCADE,
    dimension  INTEGER NOT NULL,
    vector     BLOB NOT NULL,                       -- float32 packed bytes
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS entry_tags (
    seq  INTEGER NOT NULL REFERENCES vault(seq) ON DELETE CASCADE,
    tag  TEXT NOT NULL,
    PRIMARY KEY (seq, tag)
);

-- Schema metadata for forward compatibility
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_vault_kind ON vault(kind);
CREATE INDEX IF NOT EXISTS idx_vault_category ON vault(category);
CREATE INDEX IF NOT EXISTS idx_vault_created ON vault(created_at);
CREATE INDEX IF NOT EXISTS idx_vault_expires ON vault(expires_at);
CREATE INDEX IF NOT EXISTS idx_vault_superseded ON vault(superseded_by);
CREATE INDEX IF NOT EXISTS idx_vault_owner ON vault(owner);
CREATE INDEX IF NOT EXISTS idx_tags_tag ON entry_tags(tag);
CREATE UNIQUE INDEX IF NOT EXISTS idx_vault_identity
    ON vault(owner, kind, identity_key) WHERE identity_key IS NOT NULL;
"""

# ---------------------------------------------------------------------------
# FTS5 Schema (requires the SQLite FTS5 extension)
# ---------------------------------------------------------------------------
# External-content mode: the FTS index mirrors vault but stores no duplicate
# data.  Update triggers fire only for the indexed columns so hit counters
# and file bookkeeping never churn the index.
# ---------------------------------------------------------------------------

# Only alphanumeric, space, underscore, dot and hyphen are allowed.
_FTS_TOKENIZER_PATTERN = re.compile(r"^[a-zA-Z0-9_ .\-]+$")

# Well-known presets for the --fts-tokenizer CLI flag
FTS_TOKENIZER_PRESETS = {
    "fr": "unicode61 remove_diacritics 2",
    "en": "porter unicode61 remove_diacritics 2",
    "raw": "unicode61",
}

# bm25 column weights: title, body, tags, kind
_BM25_WEIGHTS = "10.0, 1.0, 2.0, 0.5"


def _validate_fts_tokenizer(tokenizer: str) -> str:
    """Validate and return a safe FTS5 tokenizer string."""
    tokenizer = tokenizer.strip()
    if not tokenizer:
        raise ValueError("FTS5 tokenizer string cannot be empty")
    if not _FTS_TOKENIZER_PATTERN.match(tokenizer):
        raise ValueError(
            f"Unsafe FTS5 tokenizer string: {tokenizer!r} "
            "(only [a-zA-Z0-9_ .-] characters allowed)"
        )
    return tokenizer


def _fts5_schema_sql(tokenizer: str) -> str:
    """Generate FTS5 schema SQL with a validated tokenizer string."""
    safe = _validate_fts_tokenizer(tokenizer)
    return f"""
CREATE VIRTUAL TABLE IF NOT EXISTS vault_fts USING fts5(
    title, body, tags, kind,
    content='vault',
    content_rowid='seq',
    tokenize='{safe}'
);

CREATE TRIGGER IF NOT EXISTS vault_fts_ai
AFTER INSERT ON vault BEGIN
    INSERT INTO vault_fts(rowid, title, body, tags, kind)
    VALUES (new.seq, new.title, new.body, new.tags, new.kind);
END;

-- BEFORE DELETE so the old row is still readable
CREATE TRIGGER IF NOT EXISTS vault_fts_bd
BEFORE DELETE ON vault BEGIN
    INSERT INTO vault_fts(vault_fts, rowid, title, body, tags, kind)
    VALUES ('delete', old.seq, old.title, old.body, old.tags, old.kind);
END;

CREATE TRIGGER IF NOT EXISTS vault_fts_bu
BEFORE UPDATE OF title, body, tags, kind ON vault BEGIN
    INSERT INTO vault_fts(vault_fts, rowid, title, body, tags, kind)
    VALUES ('delete', old.seq, old.title, old.body, old.tags, old.kind);
END;

CREATE TRIGGER IF NOT EXISTS vault_fts_au
AFTER UPDATE OF title, body, tags, kind ON vault BEGIN
    INSERT INTO vault_fts(rowid, title, body, tags, kind)
    VALUES (new.seq, new.title, new.body, new.tags, new.kind);
END;
"""


# ---------------------------------------------------------------------------
# Vector packing helpers
# ---------------------------------------------------------------------------

def _pack_vector(vec: Sequence[float]) -> bytes:
    """Pack a float sequence to float32 bytes."""
    return np.asarray(vec, dtype=np.float32).tobytes()


def _unpack_vector(data: bytes) -> np.ndarray:
    """Unpack float32 bytes to a numpy vector."""
    return np.frombuffer(data, dtype=np.float32).copy()


def _unique_tags(tags: Sequence[str]) -> List[str]:
    """De-duplicate tags, preserving first-seen order."""
    seen: Dict[str, None] = {}
    for t in tags:
        t = str(t).strip()
        if t:
            seen.setdefault(t, None)
    return list(seen)


def _placeholders(values: Sequence[Any]) -> str:
    return ",".join("?" for _ in values)


# ---------------------------------------------------------------------------
# VaultStore
# ---------------------------------------------------------------------------

class VaultStore:
    """
    SQLite-backed index for vault entries.

    Thread-safe via explicit lock.  Every mutation is one transaction.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        wal_mode: bool = True,
        fts_tokenizer: Optional[str] = None,
        busy_timeout_ms: int = 5000,
    ):
        """Open (or create) the index database.

        Args:
            db_path: SQLite database path (or ":memory:" for in-memory).
            wal_mode: Enable WAL journal mode for concurrent readers.
            fts_tokenizer: FTS5 tokenizer string.  Defaults to
                ``"unicode61 remove_diacritics 2"``.  Must match
                ``[a-zA-Z0-9_ .-]+``.
            busy_timeout_ms: How long a writer waits on a locked database.
        """
        self._db_path = db_path
        self._lock = threading.RLock()
        self._fts5_available: bool = False
        self._fts_tokenizer = fts_tokenizer or "unicode61 remove_diacritics 2"
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            db_path, check_same_thread=False, isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        if wal_mode and db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        self._conn.executescript(_SCHEMA_SQL)
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
            (str(SCHEMA_VERSION),),
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_by', 'ctxvault')",
        )
        self._conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('created_at', ?)",
            (_now_iso(),),
        )
        self._init_fts5()
        logger.info(
            f"VaultStore initialized: {db_path} "
            f"(fts5={'yes' if self._fts5_available else 'no'}"
            f"{', tokenizer=' + self._fts_tokenizer if self._fts5_available else ''})"
        )

    def _init_fts5(self) -> None:
        """
        Create the FTS5 virtual table and sync triggers.

        If the SQLite build lacks FTS5 this sets ``_fts5_available = False``
        and full-text candidates fall back to a LIKE scan.
        """
        try:
            fts_existed = self._conn.execute(
                "SELECT 1 FROM sqlite_master "
                "WHERE type='table' AND name='vault_fts'"
            ).fetchone() is not None
            self._conn.executescript(_fts5_schema_sql(self._fts_tokenizer))
            self._fts5_available = True
            if not fts_existed:
                self._conn.execute(
                    "INSERT OR REPLACE INTO schema_meta (key, value) "
                    "VALUES ('fts_tokenizer', ?)",
                    (self._fts_tokenizer,),
                )
            logger.debug(
                f"FTS5 virtual table initialized (tokenizer={self._fts_tokenizer})"
            )
        except sqlite3.OperationalError as exc:
            # Typical message: "no such module: fts5"
            self._fts5_available = False
            logger.info(f"FTS5 not available, falling back to LIKE search: {exc}")

    @property
    def fts5_available(self) -> bool:
        return self._fts5_available

    def rebuild_fts(self) -> int:
        """Rebuild the FTS5 index from the vault table.

        Returns the number of rows indexed, or -1 if FTS5 is unavailable.
        """
        if not self._fts5_available:
            logger.warning("rebuild_fts called but FTS5 is not available")
            return -1
        with self._transaction() as conn:
            conn.execute("INSERT INTO vault_fts(vault_fts) VALUES ('rebuild')")
            count = conn.execute("SELECT COUNT(*) AS cnt FROM vault").fetchone()["cnt"]
        logger.info(f"FTS5 index rebuilt: {count} entries indexed")
        return count

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize on the lock and run the block in one write transaction."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    # -- Metadata ----------------------------------------------------------

    def get_meta(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM schema_meta WHERE key=?", (key,)
            ).fetchone()
            return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO schema_meta (key, value) VALUES (?, ?)",
                (key, value),
            )

    # -- Write operations --------------------------------------------------

    def insert_entry(self, entry: Entry, file_hash: Optional[str] = None) -> int:
        """Insert relational, full-text, tag and (optional) vector rows.

        Raises sqlite3.IntegrityError on a duplicate id, file path or
        (owner, kind, identity_key).
        """
        with self._transaction() as conn:
            tags = _unique_tags(entry.tags)
            cur = conn.execute(
                """INSERT INTO vault
                   (id, kind, category, title, body, tags, meta, source,
                    identity_key, owner, tier, created_at, updated_at,
                    expires_at, supersedes, superseded_by, source_files,
                    hit_count, file_path, file_hash)
                   VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)""",
                (
                    entry.id, entry.kind, entry.category, entry.title,
                    entry.body, json.dumps(tags), json.dumps(entry.meta),
                    entry.source, entry.identity_key, entry.owner or "",
                    entry.tier, entry.created_at, entry.updated_at,
                    entry.expires_at, json.dumps(list(entry.supersedes)),
                    entry.superseded_by,
                    json.dumps([sf.to_dict() for sf in entry.source_files]),
                    entry.hit_count, entry.file_path, file_hash,
                ),
            )
            seq = cur.lastrowid
            self._write_tags(conn, seq, tags)
            if entry.embedding is not None:
                self._write_vector(conn, seq, entry.embedding)
            return seq

    def update_entry(
        self,
        entry: Entry,
        file_hash: Optional[str] = None,
        reembed: bool = False,
    ) -> bool:
        """Rewrite all mutable columns of an existing row.

        When *reembed* is set the vector row is replaced by
        ``entry.embedding`` (or dropped if that is None).  Returns False
        if the id is unknown.
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT seq FROM vault WHERE id=?", (entry.id,)
            ).fetchone()
            if row is None:
                return False
            seq = row["seq"]
            tags = _unique_tags(entry.tags)
            conn.execute(
                """UPDATE vault SET
                   kind=?, category=?, title=?, body=?, tags=?, meta=?,
                   source=?, identity_key=?, owner=?, tier=?, updated_at=?,
                   expires_at=?, supersedes=?, superseded_by=?,
                   source_files=?, file_path=?, file_hash=?
                   WHERE seq=?""",
                (
                    entry.kind, entry.category, entry.title, entry.body,
                    json.dumps(tags), json.dumps(entry.meta), entry.source,
                    entry.identity_key, entry.owner or "", entry.tier,
                    entry.updated_at, entry.expires_at,
                    json.dumps(list(entry.supersedes)), entry.superseded_by,
                    json.dumps([sf.to_dict() for sf in entry.source_files]),
                    entry.file_path, file_hash, seq,
                ),
            )
            conn.execute("DELETE FROM entry_tags WHERE seq=?", (seq,))
            self._write_tags(conn, seq, tags)
            if reembed:
                conn.execute("DELETE FROM vault_vec WHERE seq=?", (seq,))
                if entry.embedding is not None:
                    self._write_vector(conn, seq, entry.embedding)
            return True

    def delete_entry(self, entry_id: str) -> bool:
        """Delete an entry with its index rows.

        Dangling ``superseded_by`` references to it are cleared in the same
        transaction.
        """
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM vault WHERE id=?", (entry_id,))
            if cur.rowcount == 0:
                return False
            conn.execute(
                "UPDATE vault SET superseded_by=NULL WHERE superseded_by=?",
                (entry_id,),
            )
            return True

    def mark_superseded(self, old_ids: Sequence[str], new_id: str) -> List[str]:
        """Set ``superseded_by`` on each old entry that has none yet.

        Returns the ids actually marked; an existing supersession is never
        overwritten.
        """
        marked: List[str] = []
        with self._transaction() as conn:
            for old_id in old_ids:
                if old_id == new_id:
                    continue
                cur = conn.execute(
                    "UPDATE vault SET superseded_by=? "
                    "WHERE id=? AND superseded_by IS NULL",
                    (new_id, old_id),
                )
                if cur.rowcount:
                    marked.append(old_id)
        return marked

    def set_file_info(
        self, entry_id: str, file_path: Optional[str], file_hash: Optional[str],
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE vault SET file_path=?, file_hash=? WHERE id=?",
                (file_path, file_hash, entry_id),
            )

    def record_hits(self, entry_ids: Sequence[str], now: Optional[str] = None) -> None:
        """Increment the access counter of each id."""
        if not entry_ids:
            return
        ts = now or _now_iso()
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE vault SET hit_count=hit_count+1, last_hit_at=? "
                f"WHERE id IN ({_placeholders(entry_ids)})",
                [ts, *entry_ids],
            )

    @staticmethod
    def _write_tags(conn: sqlite3.Connection, seq: int, tags: List[str]) -> None:
        conn.executemany(
            "INSERT OR IGNORE INTO entry_tags (seq, tag) VALUES (?, ?)",
            [(seq, t) for t in tags],
        )

    @staticmethod
    def _write_vector(
        conn: sqlite3.Connection, seq: int, vector: Sequence[float],
    ) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO vault_vec (seq, dimension, vector, created_at)
               VALUES (?,?,?,?)""",
            (seq, len(vector), _pack_vector(vector), _now_iso()),
        )

    # -- Lookups -----------------------------------------------------------

    def get_entry(
        self, entry_id: str, with_embedding: bool = False,
    ) -> Optional[Entry]:
        """Read a single entry by id (no visibility filtering)."""
        found = self.get_entries([entry_id], with_embedding=with_embedding)
        return found.get(entry_id)

    def get_entries(
        self, entry_ids: Sequence[str], with_embedding: bool = False,
    ) -> Dict[str, Entry]:
        """Read several entries by id.  Unknown ids are simply absent."""
        if not entry_ids:
            return {}
        ids = list(dict.fromkeys(entry_ids))
        with self._lock:
            if with_embedding:
                sql = (
                    "SELECT v.*, e.vector AS vec FROM vault v "
                    "LEFT JOIN vault_vec e ON e.seq = v.seq "
                    f"WHERE v.id IN ({_placeholders(ids)})"
                )
            else:
                sql = f"SELECT v.* FROM vault v WHERE v.id IN ({_placeholders(ids)})"
            rows = self._conn.execute(sql, ids).fetchall()
        return {row["id"]: self._row_to_entry(row, with_embedding) for row in rows}

    def get_by_identity(
        self, kind: str, identity_key: str, owner: Optional[str] = None,
    ) -> Optional[Entry]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM vault WHERE owner=? AND kind=? AND identity_key=?",
                (owner or "", kind, identity_key),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def file_index(self) -> Dict[str, Tuple[str, Optional[str]]]:
        """Map of stored file path -> (entry id, file hash)."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT id, file_path, file_hash FROM vault WHERE file_path IS NOT NULL"
            ).fetchall()
        return {row["file_path"]: (row["id"], row["file_hash"]) for row in rows}

    def count_outside(self, root: str) -> int:
        """Number of stored file paths not under *root*."""
        prefix = root.rstrip(os.sep) + os.sep
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM vault "
                "WHERE file_path IS NOT NULL AND substr(file_path, 1, ?) != ?",
                (len(prefix), prefix),
            ).fetchone()
        return row["cnt"]

    # -- Filtered scans ----------------------------------------------------

    @staticmethod
    def _filter_sql(
        filters: Optional[SearchFilters], now: str, alias: str = "v",
    ) -> Tuple[List[str], List[Any]]:
        """WHERE clauses for visibility and structural filters."""
        conditions = [f"({alias}.expires_at IS NULL OR {alias}.expires_at > ?)"]
        params: List[Any] = [now]
        if filters is None:
            return conditions, params
        if not filters.include_superseded:
            conditions.append(f"{alias}.superseded_by IS NULL")
        if not filters.include_ephemeral:
            conditions.append(f"{alias}.tier != 'ephemeral'")
        if filters.kind:
            conditions.append(f"{alias}.kind=?")
            params.append(filters.kind)
        if filters.category:
            conditions.append(f"{alias}.category=?")
            params.append(filters.category)
        if filters.since:
            conditions.append(f"{alias}.created_at >= ?")
            params.append(filters.since)
        if filters.until:
            conditions.append(f"{alias}.created_at <= ?")
            params.append(filters.until)
        if filters.owner is not None:
            conditions.append(f"{alias}.owner=?")
            params.append(filters.owner)
        if filters.tags:
            conditions.append(
                f"{alias}.seq IN (SELECT seq FROM entry_tags "
                f"WHERE tag IN ({_placeholders(filters.tags)}))"
            )
            params.extend(filters.tags)
        return conditions, params

    def list_entries(
        self,
        filters: Optional[SearchFilters] = None,
        now: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Entry]:
        """Filtered scan, newest first, with pagination."""
        conditions, params = self._filter_sql(filters, now or _now_iso())
        where = " AND ".join(conditions)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT v.* FROM vault v WHERE {where} "
                "ORDER BY v.created_at DESC, v.seq DESC LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def fts_candidates(
        self,
        fts_query: str,
        filters: Optional[SearchFilters] = None,
        now: Optional[str] = None,
        limit: int = 100,
        like_terms: Optional[Sequence[str]] = None,
    ) -> List[Tuple[str, float]]:
        """Full-text candidates as (id, bm25) pairs, best first.

        bm25 is lower-is-better.  Falls back to a LIKE scan over
        *like_terms* (score 0.0 for all) when FTS5 is unavailable or the
        MATCH expression is rejected.
        """
        now = now or _now_iso()
        conditions, params = self._filter_sql(filters, now)
        if self._fts5_available:
            where = " AND ".join(conditions + ["vault_fts MATCH ?"])
            sql = (
                f"SELECT v.id, bm25(vault_fts, {_BM25_WEIGHTS}) AS score "
                "FROM vault_fts JOIN vault v ON v.seq = vault_fts.rowid "
                f"WHERE {where} ORDER BY score LIMIT ?"
            )
            try:
                with self._lock:
                    rows = self._conn.execute(
                        sql, params + [fts_query, limit]
                    ).fetchall()
                return [(row["id"], float(row["score"])) for row in rows]
            except sqlite3.OperationalError as exc:
                logger.warning(f"FTS5 query failed, using LIKE fallback: {exc}")
        return self._like_candidates(like_terms or [], conditions, params, limit)

    def _like_candidates(
        self,
        terms: Sequence[str],
        conditions: List[str],
        params: List[Any],
        limit: int,
    ) -> List[Tuple[str, float]]:
        """LIKE-based fallback: every term in title, body or tags."""
        if not terms:
            return []
        conditions = list(conditions)
        params = list(params)
        for term in terms:
            like = f"%{term}%"
            conditions.append("(v.title LIKE ? OR v.body LIKE ? OR v.tags LIKE ?)")
            params.extend([like, like, like])
        where = " AND ".join(conditions)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT v.id FROM vault v WHERE {where} "
                "ORDER BY v.updated_at DESC LIMIT ?",
                params + [limit],
            ).fetchall()
        return [(row["id"], 0.0) for row in rows]

    # -- Vectors -----------------------------------------------------------

    def vector_knn(
        self,
        vector: Sequence[float],
        k: int,
        filters: Optional[SearchFilters] = None,
        now: Optional[str] = None,
        exclude_categories: Sequence[str] = (),
    ) -> List[Tuple[str, float]]:
        """Brute-force cosine k-NN as (id, distance) pairs, nearest first.

        Distance is ``1 - cosine_similarity`` (0 = same direction).  Rows
        whose dimension differs from the query are ignored.
        """
        query = np.asarray(vector, dtype=np.float32)
        q_norm = float(np.linalg.norm(query))
        if k <= 0 or q_norm == 0.0:
            return []
        conditions, params = self._filter_sql(filters, now or _now_iso())
        if exclude_categories:
            conditions.append(
                f"v.category NOT IN ({_placeholders(exclude_categories)})"
            )
            params.extend(exclude_categories)
        conditions.append("e.dimension=?")
        params.append(int(query.shape[0]))
        where = " AND ".join(conditions)
        with self._lock:
            rows = self._conn.execute(
                "SELECT v.id, e.vector FROM vault_vec e "
                f"JOIN vault v ON v.seq = e.seq WHERE {where}",
                params,
            ).fetchall()
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        matrix = np.vstack([_unpack_vector(row["vector"]) for row in rows])
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0.0] = np.inf
        sims = (matrix @ query) / (norms * q_norm)
        distances = 1.0 - sims
        order = np.argsort(distances, kind="stable")[:k]
        return [(ids[i], float(distances[i])) for i in order]

    def get_embeddings(self, entry_ids: Sequence[str]) -> Dict[str, np.ndarray]:
        """Return {id: vector} for the ids that have a vector row."""
        if not entry_ids:
            return {}
        ids = list(dict.fromkeys(entry_ids))
        with self._lock:
            rows = self._conn.execute(
                "SELECT v.id, e.vector FROM vault_vec e "
                "JOIN vault v ON v.seq = e.seq "
                f"WHERE v.id IN ({_placeholders(ids)})",
                ids,
            ).fetchall()
        return {row["id"]: _unpack_vector(row["vector"]) for row in rows}

    # -- Maintenance queries -----------------------------------------------

    def expired_ids(self, now: str) -> List[str]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT id FROM vault WHERE expires_at IS NOT NULL AND expires_at <= ? "
                "ORDER BY expires_at",
                (now,),
            ).fetchall()
        return [row["id"] for row in rows]

    def tag_counts(
        self,
        now: str,
        exclude_kinds: Sequence[str] = (),
        owner: Optional[str] = None,
    ) -> Dict[str, int]:
        """Live, non-superseded entry count per tag."""
        conditions = [
            "v.superseded_by IS NULL",
            "(v.expires_at IS NULL OR v.expires_at > ?)",
        ]
        params: List[Any] = [now]
        if exclude_kinds:
            conditions.append(f"v.kind NOT IN ({_placeholders(exclude_kinds)})")
            params.extend(exclude_kinds)
        if owner is not None:
            conditions.append("v.owner=?")
            params.append(owner)
        where = " AND ".join(conditions)
        with self._lock:
            rows = self._conn.execute(
                "SELECT t.tag, COUNT(*) AS cnt FROM entry_tags t "
                f"JOIN vault v ON v.seq = t.seq WHERE {where} GROUP BY t.tag",
                params,
            ).fetchall()
        return {row["tag"]: row["cnt"] for row in rows}

    def latest_tagged(
        self,
        kinds: Sequence[str],
        now: str,
        owner: Optional[str] = None,
    ) -> Dict[str, str]:
        """Newest ``created_at`` per tag among entries of the given kinds."""
        if not kinds:
            return {}
        conditions = [
            f"v.kind IN ({_placeholders(kinds)})",
            "(v.expires_at IS NULL OR v.expires_at > ?)",
        ]
        params: List[Any] = [*kinds, now]
        if owner is not None:
            conditions.append("v.owner=?")
            params.append(owner)
        where = " AND ".join(conditions)
        with self._lock:
            rows = self._conn.execute(
                "SELECT t.tag, MAX(v.created_at) AS latest FROM entry_tags t "
                f"JOIN vault v ON v.seq = t.seq WHERE {where} GROUP BY t.tag",
                params,
            ).fetchall()
        return {row["tag"]: row["latest"] for row in rows}

    def cold_ids(
        self,
        cutoff: str,
        max_hit_count: int,
        protected_kinds: Sequence[str],
        now: str,
        owner: Optional[str] = None,
    ) -> List[str]:
        """Ids created before *cutoff* with few accesses, oldest first."""
        conditions = [
            "v.created_at < ?",
            "v.hit_count <= ?",
            "v.superseded_by IS NULL",
            "(v.expires_at IS NULL OR v.expires_at > ?)",
        ]
        params: List[Any] = [cutoff, max_hit_count, now]
        if protected_kinds:
            conditions.append(f"v.kind NOT IN ({_placeholders(protected_kinds)})")
            params.extend(protected_kinds)
        if owner is not None:
            conditions.append("v.owner=?")
            params.append(owner)
        where = " AND ".join(conditions)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT v.id FROM vault v WHERE {where} ORDER BY v.created_at",
                params,
            ).fetchall()
        return [row["id"] for row in rows]

    # -- Stats -------------------------------------------------------------

    def stats(self, now: Optional[str] = None) -> Dict[str, Any]:
        """Summary statistics for the index."""
        now = now or _now_iso()
        with self._lock:
            total = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM vault"
            ).fetchone()["cnt"]
            by_category = {
                row["category"]: row["cnt"] for row in self._conn.execute(
                    "SELECT category, COUNT(*) AS cnt FROM vault GROUP BY category"
                ).fetchall()
            }
            by_kind = {
                row["kind"]: row["cnt"] for row in self._conn.execute(
                    "SELECT kind, COUNT(*) AS cnt FROM vault GROUP BY kind"
                ).fetchall()
            }
            superseded = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM vault WHERE superseded_by IS NOT NULL"
            ).fetchone()["cnt"]
            expired = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM vault "
                "WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            ).fetchone()["cnt"]
            embeddings = self._conn.execute(
                "SELECT COUNT(*) AS cnt FROM vault_vec"
            ).fetchone()["cnt"]
            tags = self._conn.execute(
                "SELECT COUNT(DISTINCT tag) AS cnt FROM entry_tags"
            ).fetchone()["cnt"]
        return {
            "total_entries": total,
            "by_category": by_category,
            "by_kind": by_kind,
            "superseded": superseded,
            "expired_pending": expired,
            "embeddings_count": embeddings,
            "distinct_tags": tags,
            "fts5_available": self._fts5_available,
            "fts_tokenizer": self._fts_tokenizer if self._fts5_available else None,
            "vault_root": self.get_meta("vault_root"),
        }

    # -- Internal helpers --------------------------------------------------

    @staticmethod
    def _row_to_entry(row: sqlite3.Row, with_embedding: bool = False) -> Entry:
        """Convert a SQLite Row to an Entry."""
        embedding = None
        if with_embedding and row["vec"] is not None:
            embedding = _unpack_vector(row["vec"]).tolist()
        return Entry(
            id=row["id"],
            kind=row["kind"],
            category=row["category"],
            title=row["title"],
            body=row["body"],
            tags=json.loads(row["tags"]),
            meta=json.loads(row["meta"]),
            source=row["source"],
            identity_key=row["identity_key"],
            owner=row["owner"] or None,
            tier=row["tier"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
            supersedes=json.loads(row["supersedes"]),
            superseded_by=row["superseded_by"],
            source_files=[
                SourceFile.from_dict(d) for d in json.loads(row["source_files"])
            ],
            embedding=embedding,
            hit_count=row["hit_count"],
            file_path=row["file_path"],
        )
