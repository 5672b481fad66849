"""
Vault Configuration

Configuration dataclasses for ctxvault: store, vault directory, search
ranking, duplicate detection, read-time conflicts, consolidation heuristics
and the embedding capability.  Includes load_config() for reading a JSON
config file with silent fallback to compiled defaults.

All ranking and consolidation constants are defaults, not invariants: every
one of them can be overridden from the config file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ctxvault.errors import ValidationError


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and not isinstance(value, typ):
        expected = (
            typ.__name__ if isinstance(typ, type)
            else "|".join(t.__name__ for t in typ)
        )
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


@dataclass
class StoreConfig:
    """SQLite index configuration."""
    db_path: str = ".ctxvault/vault.db"
    wal_mode: bool = True
    fts_tokenizer: str = "unicode61 remove_diacritics 2"
    busy_timeout_ms: int = 5000

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.busy_timeout_ms",
                     self.busy_timeout_ms, 0, 600000, int)
        return errors


@dataclass
class VaultDirConfig:
    """Vault directory (source of truth) configuration."""
    vault_dir: str = ".ctxvault/vault"
    source_root: Optional[str] = None     # base for relative source_files paths
    prune_on_open: bool = True
    auto_reindex: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        if not self.vault_dir:
            errors.append("vault.vault_dir: must not be empty")
        return errors


@dataclass
class SearchConfig:
    """Hybrid ranking configuration."""
    rrf_k: int = 60
    decay_days: float = 30.0
    mmr_lambda: float = 0.7
    over_fetch_multiplier: int = 10
    max_fetch: int = 500
    default_limit: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "search.rrf_k", self.rrf_k, 1, 10000, int)
        _check_range(errors, "search.decay_days",
                     self.decay_days, 0.001, 36500.0, (int, float))
        _check_range(errors, "search.mmr_lambda",
                     self.mmr_lambda, 0.0, 1.0, (int, float))
        _check_range(errors, "search.over_fetch_multiplier",
                     self.over_fetch_multiplier, 1, 1000, int)
        _check_range(errors, "search.max_fetch", self.max_fetch, 1, 100000, int)
        _check_range(errors, "search.default_limit",
                     self.default_limit, 1, 1000, int)
        return errors


@dataclass
class DedupConfig:
    """Write-time near-duplicate detection."""
    skip_threshold: float = 0.95
    update_threshold: float = 0.85
    knn: int = 10

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "dedup.skip_threshold",
                     self.skip_threshold, 0.0, 1.0, (int, float))
        _check_range(errors, "dedup.update_threshold",
                     self.update_threshold, 0.0, 1.0, (int, float))
        _check_range(errors, "dedup.knn", self.knn, 1, 500, int)
        if not errors and self.update_threshold > self.skip_threshold:
            errors.append("dedup.update_threshold: must not exceed skip_threshold")
        return errors


@dataclass
class ConflictConfig:
    """Read-time conflict detection."""
    stale_duplicate_days: float = 7.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "conflicts.stale_duplicate_days",
                     self.stale_duplicate_days, 0.0, 36500.0, (int, float))
        return errors


@dataclass
class ConsolidateConfig:
    """Hot-tag and cold-entry heuristics."""
    tag_threshold: int = 10
    max_synthesis_age_days: int = 7
    cold_max_age_days: int = 90
    cold_max_hit_count: int = 0
    synthesis_kinds: List[str] = field(default_factory=lambda: ["brief"])
    protected_kinds: List[str] = field(
        default_factory=lambda: ["decision", "architecture", "brief"]
    )
    auto_scan: bool = False

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "consolidate.tag_threshold",
                     self.tag_threshold, 1, 100000, int)
        _check_range(errors, "consolidate.max_synthesis_age_days",
                     self.max_synthesis_age_days, 0, 36500, int)
        _check_range(errors, "consolidate.cold_max_age_days",
                     self.cold_max_age_days, 0, 36500, int)
        _check_range(errors, "consolidate.cold_max_hit_count",
                     self.cold_max_hit_count, 0, 1000000, int)
        return errors


@dataclass
class EmbedConfig:
    """Embedding capability configuration."""
    enabled: bool = True
    model_name: str = "all-MiniLM-L6-v2"
    timeout_s: float = 10.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "embed.timeout_s",
                     self.timeout_s, 0.01, 3600.0, (int, float))
        return errors


@dataclass
class VaultConfig:
    """Top-level ctxvault configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    vault: VaultDirConfig = field(default_factory=VaultDirConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    dedup: DedupConfig = field(default_factory=DedupConfig)
    conflicts: ConflictConfig = field(default_factory=ConflictConfig)
    consolidate: ConsolidateConfig = field(default_factory=ConsolidateConfig)
    embed: EmbedConfig = field(default_factory=EmbedConfig)
    # extra kinds: {"runbook": {"category": "knowledge", "staleness_days": 60}}
    kinds: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> VaultConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "vault" in d:
            kwargs["vault"] = VaultDirConfig(**d["vault"])
        if "search" in d:
            kwargs["search"] = SearchConfig(**d["search"])
        if "dedup" in d:
            kwargs["dedup"] = DedupConfig(**d["dedup"])
        if "conflicts" in d:
            kwargs["conflicts"] = ConflictConfig(**d["conflicts"])
        if "consolidate" in d:
            kwargs["consolidate"] = ConsolidateConfig(**d["consolidate"])
        if "embed" in d:
            kwargs["embed"] = EmbedConfig(**d["embed"])
        if "kinds" in d:
            kwargs["kinds"] = dict(d["kinds"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.vault.validate())
        errors.extend(self.search.validate())
        errors.extend(self.dedup.validate())
        errors.extend(self.conflicts.validate())
        errors.extend(self.consolidate.validate())
        errors.extend(self.embed.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> VaultConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        VaultConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = VaultConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = VaultConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = VaultConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
