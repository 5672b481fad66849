"""
ctxvault CLI — Vault Commands

Commands:
    ctxvault search "query" [-k N] [--kind K] [--tags T]   — hybrid search → stdout
    ctxvault save --kind K [--title T] [--body B | stdin]   — write an entry
    ctxvault show   <id>                                    — display one entry
    ctxvault delete <id>                                    — delete entry + file
    ctxvault reindex [--incremental]                        — files → index
    ctxvault prune  [--dry-run]                             — remove expired entries
    ctxvault consolidate                                    — hot tags + cold entries
    ctxvault stats                                          — index metrics

Environment variables:
    CTXVAULT_DB       Path to SQLite index (default: .ctxvault/vault.db)
    CTXVAULT_VAULT    Vault root directory (default: .ctxvault/vault)
    CTXVAULT_CONFIG   Path to a JSON config file
    CTXVAULT_FTS      FTS5 tokenizer preset: fr|en|raw (default: fr)
    CTXVAULT_EMBED    Set to 0 to disable embeddings (full-text only)

Precedence:
    CLI --flag  >  CTXVAULT_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, invalid input, unknown id)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import List, Optional

from ctxvault.errors import NotFoundError, ValidationError, VaultIOError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env parsing (never crash on bad export)
# ---------------------------------------------------------------------------


def _env_int(name: str, default: int) -> int:
    """Parse integer env var with fallback. Never raises on bad input."""
    v = os.environ.get(name)
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _env_str(name: str, default: str) -> str:
    """Parse string env var with fallback."""
    return os.environ.get(name, default)


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_fts(value: str = "") -> str:
    """Resolve FTS tokenizer: preset name → tokenizer string.

    Accepts: 'fr', 'en', 'raw' (preset names)
    Or: raw tokenizer string (passed through if not a known preset).
    """
    from ctxvault.store import FTS_TOKENIZER_PRESETS
    v = value or _env_str("CTXVAULT_FTS", "fr")
    return FTS_TOKENIZER_PRESETS.get(v, v)


def _split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


# ---------------------------------------------------------------------------
# Vault factory
# ---------------------------------------------------------------------------


def _open_vault(args: argparse.Namespace):
    """Open a Vault from config file, env vars and flags."""
    from ctxvault.config import load_config
    from ctxvault.vault import Vault

    config_path = getattr(args, "config", None) or os.environ.get("CTXVAULT_CONFIG")
    config = load_config(config_path, strict=True)
    if os.environ.get("CTXVAULT_DB"):
        config.store.db_path = os.environ["CTXVAULT_DB"]
    if os.environ.get("CTXVAULT_VAULT"):
        config.vault.vault_dir = os.environ["CTXVAULT_VAULT"]
    if os.environ.get("CTXVAULT_FTS"):
        config.store.fts_tokenizer = _resolve_fts()
    if _env_int("CTXVAULT_EMBED", 1) == 0:
        config.embed.enabled = False
    return Vault.open(
        config,
        db_path=getattr(args, "db", None),
        vault_dir=getattr(args, "vault", None),
    )


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


# ===========================================================================
# Command: search  (hybrid search → stdout)
# ===========================================================================


def cmd_search(args: argparse.Namespace) -> None:
    """Hybrid full-text + vector search."""
    from ctxvault.types import SearchFilters

    filters = SearchFilters(
        kind=args.kind,
        category=args.category,
        tags=_split_csv(args.tags),
        since=args.since,
        until=args.until,
        include_superseded=args.include_superseded,
        include_ephemeral=args.include_ephemeral,
    )
    with _open_vault(args) as vault:
        response = vault.search(args.query, filters, limit=args.k, offset=args.offset)

    for note in response.notes:
        _info(f"[search] {note}")

    if getattr(args, "json", False):
        _print_json(response.to_dict())
        return

    if not response.results:
        _info("No results found.")
        return

    print(f"Found {len(response.results)} entr{'y' if len(response.results) == 1 else 'ies'}:\n")
    for r in response.results:
        e = r.entry
        stale = f"  [STALE: {r.stale_reason}]" if r.stale else ""
        print(f"  {r.score:.4f}  {e.id}  {e.kind:12s}  {e.title or e.body[:60]}{stale}")
        if e.tags:
            print(f"    tags: {', '.join(e.tags)}")
        print()
    for c in response.conflicts:
        print(f"  ! {c.reason}: {c.detail}")
        print(f"    {c.recommendation}")


# ===========================================================================
# Command: save
# ===========================================================================


def cmd_save(args: argparse.Namespace) -> None:
    """Save an entry; the body comes from --body or stdin."""
    body = args.body
    if body is None:
        if sys.stdin.isatty():
            _warn("[save] No --body given and stdin is a terminal.")
            sys.exit(1)
        body = sys.stdin.read()

    meta = None
    if args.meta:
        try:
            meta = json.loads(args.meta)
        except json.JSONDecodeError as e:
            _warn(f"[save] --meta is not valid JSON: {e}")
            sys.exit(1)

    with _open_vault(args) as vault:
        result = vault.save(
            kind=args.kind,
            body=body,
            title=args.title or "",
            tags=_split_csv(args.tags),
            meta=meta,
            source=args.source,
            identity_key=args.identity_key,
            tier=args.tier,
            expires_at=args.expires_at,
            supersedes=_split_csv(args.supersedes),
            folder=args.folder,
            dry_run=args.dry_run,
        )

    for note in result.notes:
        _info(f"[save] {note}")

    if getattr(args, "json", False):
        _print_json(result.to_dict())
        return

    if result.dry_run:
        print(f"Suggested action: {result.suggested_action}")
    elif result.updated:
        print(f"Updated {result.id} ({result.file_path})")
    else:
        print(f"Saved {result.id} ({result.file_path})")
    for c in result.candidates:
        print(f"  {c.suggested_action:6s} {c.similarity:.2f}  {c.id}  {c.reasoning}")


# ===========================================================================
# Command: show / delete
# ===========================================================================


def cmd_show(args: argparse.Namespace) -> None:
    """Display a single entry."""
    with _open_vault(args) as vault:
        entry = vault.get(args.id)

    if getattr(args, "json", False):
        _print_json(entry.to_dict())
        return

    print(f"ID:         {entry.id}")
    print(f"Kind:       {entry.kind} ({entry.category})")
    print(f"Tier:       {entry.tier}")
    print(f"Title:      {entry.title}")
    print(f"Tags:       {', '.join(entry.tags) if entry.tags else '(none)'}")
    if entry.identity_key:
        print(f"Identity:   {entry.identity_key}")
    print(f"Created:    {entry.created_at}")
    print(f"Updated:    {entry.updated_at}")
    if entry.expires_at:
        print(f"Expires:    {entry.expires_at}")
    if entry.superseded_by:
        print(f"Superseded: by {entry.superseded_by}")
    print(f"File:       {entry.file_path}")
    print(f"\n{entry.body}")


def cmd_delete(args: argparse.Namespace) -> None:
    """Delete an entry, its index rows and its file."""
    with _open_vault(args) as vault:
        vault.delete(args.id)
    _info(f"[delete] Deleted {args.id}")


# ===========================================================================
# Command: reindex / prune / consolidate / stats
# ===========================================================================


def cmd_reindex(args: argparse.Namespace) -> None:
    """Reconcile the index with the vault files."""
    with _open_vault(args) as vault:
        stats = vault.reindex(full_sync=not args.incremental)

    if getattr(args, "json", False):
        _print_json(stats.to_dict())
        return

    print(f"Reindex of {vault.root}:")
    print(f"  Added:     {stats.added}")
    print(f"  Updated:   {stats.updated}")
    print(f"  Removed:   {stats.removed}")
    print(f"  Unchanged: {stats.unchanged}")
    for err in stats.errors:
        _warn(f"  error: {err['path']}: {err['error']}")
    if stats.errors:
        sys.exit(1)


def cmd_prune(args: argparse.Namespace) -> None:
    """Physically remove expired entries."""
    with _open_vault(args) as vault:
        result = vault.prune(dry_run=args.dry_run)

    if getattr(args, "json", False):
        _print_json(result.to_dict())
        return

    verb = "Would prune" if result.dry_run else "Pruned"
    print(f"{verb} {result.count} expired entr{'y' if result.count == 1 else 'ies'}")
    for entry_id in result.ids:
        print(f"  {entry_id}")


def cmd_consolidate(args: argparse.Namespace) -> None:
    """Report hot tags and cold entries (read-only)."""
    with _open_vault(args) as vault:
        report = vault.consolidation_scan()

    if getattr(args, "json", False):
        _print_json(report.to_dict())
        return

    print(f"Hot tags ({len(report.hot_tags)}):")
    for h in report.hot_tags:
        age = "never" if h.last_synthesis_age_days is None else f"{h.last_synthesis_age_days}d ago"
        print(f"  {h.tag:24s} {h.entry_count:5d} entries  last synthesis: {age}")
    print(f"\nCold entries ({len(report.cold_ids)}):")
    for entry_id in report.cold_ids:
        print(f"  {entry_id}")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show index statistics."""
    with _open_vault(args) as vault:
        stats = vault.stats()

    if getattr(args, "json", False):
        _print_json(stats)
        return

    print(f"ctxvault index: {stats['total_entries']} entries")
    print(f"  Vault root:   {stats['vault_root_configured']}")
    print(f"  Embeddings:   {stats['embeddings_count']}"
          f" ({'available' if stats['embedding_available'] else 'disabled'})")
    print(f"  Superseded:   {stats['superseded']}")
    print(f"  Expired:      {stats['expired_pending']} (pending prune)")
    print(f"  Tags:         {stats['distinct_tags']}")
    fts = stats["fts_tokenizer"] if stats["fts5_available"] else "unavailable"
    print(f"  FTS5:         {fts}")
    for category, count in sorted(stats["by_category"].items()):
        print(f"  {category:13s} {count}")


# ===========================================================================
# Entry point
# ===========================================================================


def main(argv: Optional[List[str]] = None) -> None:
    """CLI entry point: ctxvault <command> [args]."""
    global _quiet

    # Shared parent so both `ctxvault --json stats` and `ctxvault stats --json`
    # work.  SUPPRESS keeps subparser defaults from overriding main-level flags.
    _db_default = _env_str("CTXVAULT_DB", ".ctxvault/vault.db")
    _vault_default = _env_str("CTXVAULT_VAULT", ".ctxvault/vault")
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite index (default: {_db_default})",
    )
    _common.add_argument(
        "--vault", default=argparse.SUPPRESS,
        help=f"Vault root directory (default: {_vault_default})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="Path to a JSON config file (default: CTXVAULT_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="ctxvault",
        description="ctxvault — local-first, file-backed knowledge store for agent memory",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    # -- search ------------------------------------------------------------
    p_search = sub.add_parser("search", parents=[_common], help="Hybrid search")
    p_search.add_argument("query", nargs="?", default="",
                          help="Search query (blank lists newest entries)")
    p_search.add_argument("--kind", default=None, help="Filter by kind")
    p_search.add_argument("--category", default=None,
                          choices=["knowledge", "entity", "event"],
                          help="Filter by category")
    p_search.add_argument("--tags", default=None, help="Comma-separated tags (any match)")
    p_search.add_argument("--since", default=None, help="Created at or after (ISO 8601)")
    p_search.add_argument("--until", default=None, help="Created at or before (ISO 8601)")
    p_search.add_argument("--include-superseded", action="store_true",
                          help="Include superseded entries")
    p_search.add_argument("--include-ephemeral", action="store_true",
                          help="Include ephemeral-tier entries")
    p_search.add_argument("-k", type=int, default=None, help="Max results (default: 10)")
    p_search.add_argument("--offset", type=int, default=0, help="Skip N results")
    p_search.set_defaults(func=cmd_search)

    # -- save --------------------------------------------------------------
    p_save = sub.add_parser("save", parents=[_common], help="Save an entry")
    p_save.add_argument("--kind", required=True, help="Entry kind (e.g. insight, decision)")
    p_save.add_argument("--title", default=None, help="Entry title")
    p_save.add_argument("--body", default=None, help="Entry body (default: stdin)")
    p_save.add_argument("--tags", default=None, help="Comma-separated tags")
    p_save.add_argument("--meta", default=None, help="JSON object of extra metadata")
    p_save.add_argument("--source", default=None, help="Free-form provenance label")
    p_save.add_argument("--identity-key", default=None,
                        help="Stable key for upserts (required for entity kinds)")
    p_save.add_argument("--tier", default=None,
                        choices=["ephemeral", "working", "durable"],
                        help="Tier (default: per kind)")
    p_save.add_argument("--expires-at", default=None, help="Expiry timestamp (ISO 8601)")
    p_save.add_argument("--supersedes", default=None,
                        help="Comma-separated ids this entry replaces")
    p_save.add_argument("--folder", default=None, help="Sub-folder under the kind directory")
    p_save.add_argument("--dry-run", action="store_true",
                        help="Only report duplicate candidates, write nothing")
    p_save.set_defaults(func=cmd_save)

    # -- show / delete -----------------------------------------------------
    p_show = sub.add_parser("show", parents=[_common], help="Show entry details")
    p_show.add_argument("id", help="Entry ID")
    p_show.set_defaults(func=cmd_show)

    p_delete = sub.add_parser("delete", parents=[_common], help="Delete an entry")
    p_delete.add_argument("id", help="Entry ID")
    p_delete.set_defaults(func=cmd_delete)

    # -- reindex -----------------------------------------------------------
    p_reindex = sub.add_parser("reindex", parents=[_common],
                               help="Reconcile the index with vault files")
    p_reindex.add_argument("--incremental", action="store_true",
                           help="Add new files only; skip edits and keep rows "
                                "whose file is missing")
    p_reindex.set_defaults(func=cmd_reindex)

    # -- prune -------------------------------------------------------------
    p_prune = sub.add_parser("prune", parents=[_common], help="Remove expired entries")
    p_prune.add_argument("--dry-run", action="store_true", help="List without deleting")
    p_prune.set_defaults(func=cmd_prune)

    # -- consolidate / stats -----------------------------------------------
    p_cons = sub.add_parser("consolidate", parents=[_common],
                            help="Report hot tags and cold entries")
    p_cons.set_defaults(func=cmd_consolidate)

    p_stats = sub.add_parser("stats", parents=[_common], help="Index statistics")
    p_stats.set_defaults(func=cmd_stats)

    # -- Parse and dispatch ------------------------------------------------
    args = parser.parse_args(argv)

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        args.func(args)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. ctxvault search | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except (ValidationError, NotFoundError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except VaultIOError as e:
        _warn(f"I/O error: {e}")
        sys.exit(2)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
