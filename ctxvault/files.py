"""
Vault Files — markdown + YAML front matter persistence

Every entry lives in one markdown file:

    <vault>/<category-dir>/<kind>/[<folder>/]<slug>-<id8>.md

    ---
    id: 01J9ZQ3V8K4T2W6X0Y1Z2A3B4C
    title: SQLite WAL mode
    tags: [sqlite, database]
    created: '2026-01-05T10:00:00.000000Z'
    ...
    ---
    Body text.

Front matter is read and written through python-frontmatter; this module
owns only the mapping between Entry fields and front-matter keys.  The
entry kind is taken from the directory, never from the file.
"""

from __future__ import annotations

import errno
import hashlib
import logging
import os
import re
import tempfile
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

import frontmatter

from ctxvault.categories import DIR_CATEGORIES, KindRegistry
from ctxvault.errors import ValidationError
from ctxvault.types import Entry, SourceFile, _generate_id, normalize_ts

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Files that are documentation, not entries
SKIPPED_FILENAMES = frozenset({"README.md", "context.md", "memory.md"})

_SLUG_RE = re.compile(r"[^a-z0-9]+")
_H1_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)

_TRANSIENT_ERRNOS = {errno.EAGAIN, errno.EBUSY, errno.EINTR}


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

def slugify(text: str, max_len: int = 60) -> str:
    """Lowercase ASCII slug, at most *max_len* characters ("entry" if empty)."""
    slug = _SLUG_RE.sub("-", text.lower()).strip("-")
    slug = slug[:max_len].rstrip("-")
    return slug or "entry"


def entry_filename(entry: Entry) -> str:
    """``<slug>-<last 8 id chars>.md``, slug from the title or body start."""
    seed = (entry.title or entry.body)[:40]
    return f"{slugify(seed)}-{entry.id[-8:].lower()}.md"


def safe_join(root: str, *parts: str) -> str:
    """Join *parts* under *root*, refusing anything that escapes it."""
    base = os.path.realpath(root)
    target = os.path.realpath(os.path.join(base, *parts))
    if target != base and not target.startswith(base + os.sep):
        raise ValidationError(f"Path escapes the vault root: {os.path.join(*parts)}")
    return target


def entry_path(
    root: str, registry: KindRegistry, entry: Entry, folder: Optional[str] = None,
) -> str:
    """Absolute canonical path for *entry* under *root*."""
    parts = [registry.kind_dir(entry.kind)]
    if folder:
        parts.append(folder)
    parts.append(entry_filename(entry))
    return safe_join(root, *parts)


def kind_from_path(root: str, path: str) -> Optional[Tuple[str, str]]:
    """(category, kind) implied by a file's location, or None.

    Only ``<category-dir>/<kind>/...`` locations carry entries.
    """
    rel = os.path.relpath(path, root)
    parts = Path(rel).parts
    if len(parts) < 3 or parts[0] not in DIR_CATEGORIES:
        return None
    return DIR_CATEGORIES[parts[0]], parts[1]


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def file_sha256(path: str) -> str:
    """Compute SHA-256 hex digest of a file."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            h.update(block)
    return h.hexdigest()


def _with_retry(fn: Callable[..., T], *args: Any) -> T:
    """Call *fn*, retrying once on a transient OS error."""
    try:
        return fn(*args)
    except OSError as exc:
        if exc.errno not in _TRANSIENT_ERRNOS:
            raise
        logger.debug(f"Transient I/O error ({exc}), retrying once")
        time.sleep(0.05)
        return fn(*args)


# ---------------------------------------------------------------------------
# Front matter mapping
# ---------------------------------------------------------------------------

def _plain(value: Any) -> Any:
    """Coerce YAML-native values (dates, nested containers) to JSON-safe ones."""
    if isinstance(value, (datetime, date)):
        return normalize_ts(value)
    if isinstance(value, dict):
        return {str(k): _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    return [str(v) for v in value if v is not None and str(v).strip()]


def _opt_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def render_entry(entry: Entry) -> str:
    """Serialize *entry* to markdown with YAML front matter."""
    md: Dict[str, Any] = {"id": entry.id, "title": entry.title or ""}
    if entry.tags:
        md["tags"] = list(entry.tags)
    if entry.source:
        md["source"] = entry.source
    if entry.identity_key:
        md["identity_key"] = entry.identity_key
    if entry.owner:
        md["owner"] = entry.owner
    md["tier"] = entry.tier
    md["created"] = entry.created_at
    md["updated"] = entry.updated_at
    if entry.expires_at:
        md["expires_at"] = entry.expires_at
    if entry.supersedes:
        md["supersedes"] = list(entry.supersedes)
    if entry.source_files:
        md["source_files"] = [sf.to_dict() for sf in entry.source_files]
    if entry.meta:
        md["meta"] = entry.meta
    post = frontmatter.Post(entry.body, **md)
    return frontmatter.dumps(post, sort_keys=False) + "\n"


def parse_entry(
    text: str,
    kind: str,
    registry: KindRegistry,
    now: str,
    entry_id: Optional[str] = None,
) -> Entry:
    """Build an Entry from markdown text found in a ``<kind>`` directory.

    *entry_id* (the id already stored for this path) wins over a missing
    front-matter id; a file with neither gets a fresh id.  Files without
    front matter (or without a ``title`` key) are accepted: the title comes
    from the first ``#`` heading.
    """
    post = frontmatter.loads(text)
    md = _plain(dict(post.metadata))
    body = post.content.strip()
    if "title" in md:
        title = str(md["title"] or "").strip()
    else:
        h1 = _H1_RE.search(body)
        title = h1.group(1).strip() if h1 else ""
    tier = md.get("tier") or registry.default_tier(kind)
    created = normalize_ts(md.get("created") or md.get("created_at")) or now
    updated = normalize_ts(md.get("updated") or md.get("updated_at")) or created
    meta = md.get("meta")
    source_files = [
        SourceFile.from_dict(sf) for sf in md.get("source_files") or []
        if isinstance(sf, dict)
    ]
    return Entry(
        id=_opt_str(md.get("id")) or entry_id or _generate_id(),
        kind=kind,
        category=registry.category_of(kind),
        title=title,
        body=body,
        tags=_as_list(md.get("tags")),
        meta=meta if isinstance(meta, dict) else {},
        source=_opt_str(md.get("source")),
        identity_key=_opt_str(md.get("identity_key")),
        owner=_opt_str(md.get("owner")),
        tier=str(tier),
        created_at=created,
        updated_at=updated,
        expires_at=normalize_ts(md.get("expires_at")),
        supersedes=_as_list(md.get("supersedes")),
        source_files=source_files,
    )


# ---------------------------------------------------------------------------
# Read / write
# ---------------------------------------------------------------------------

def _atomic_write(path: str, data: bytes) -> None:
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", suffix=".md", dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def write_entry_file(path: str, entry: Entry) -> str:
    """Atomically write *entry* to *path*; returns the SHA-256 of the file."""
    data = render_entry(entry).encode("utf-8")
    _with_retry(_atomic_write, path, data)
    return hashlib.sha256(data).hexdigest()


def read_entry_file(path: str) -> Tuple[str, str]:
    """Return (text, sha256) of a vault file."""
    def _read() -> bytes:
        with open(path, "rb") as f:
            return f.read()

    data = _with_retry(_read)
    return data.decode("utf-8"), hashlib.sha256(data).hexdigest()


def remove_entry_file(path: Optional[str]) -> bool:
    """Unlink a vault file; False if it was already gone."""
    if not path:
        return False
    try:
        _with_retry(os.unlink, path)
    except FileNotFoundError:
        return False
    return True
