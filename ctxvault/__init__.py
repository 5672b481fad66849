"""
ctxvault — A local-first, file-backed knowledge store for agent memory.

Markdown files under a vault directory are the source of truth.  A derived
SQLite index (relational + FTS5 + vectors) serves hybrid search, duplicate
advice, conflict detection, consolidation heuristics and expiry pruning.
"""

__version__ = "0.3.0"

from ctxvault.types import (
    Entry,
    SourceFile,
    SearchFilters,
    SearchResult,
    SearchResponse,
    SaveResult,
    ConflictCandidate,
    Conflict,
    ReindexStats,
    PruneResult,
    ConsolidationReport,
    HotTag,
)
from ctxvault.categories import KindRegistry, KindSpec
from ctxvault.config import VaultConfig, load_config
from ctxvault.errors import (
    VaultError,
    ValidationError,
    NotFoundError,
    VaultIOError,
    CapabilityDegraded,
    ConsistencyWarning,
)
from ctxvault.store import VaultStore, SCHEMA_VERSION
from ctxvault.vault import Vault

__all__ = [
    "__version__",
    "Entry",
    "SourceFile",
    "SearchFilters",
    "SearchResult",
    "SearchResponse",
    "SaveResult",
    "ConflictCandidate",
    "Conflict",
    "ReindexStats",
    "PruneResult",
    "ConsolidationReport",
    "HotTag",
    "KindRegistry",
    "KindSpec",
    "VaultConfig",
    "load_config",
    "VaultError",
    "ValidationError",
    "NotFoundError",
    "VaultIOError",
    "CapabilityDegraded",
    "ConsistencyWarning",
    "VaultStore",
    "SCHEMA_VERSION",
    "Vault",
]
