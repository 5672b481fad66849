"""
Shared fixtures: deterministic embedder, controllable clock, store and vault.
"""

import hashlib
import math
from datetime import timedelta

import pytest

from ctxvault.config import VaultConfig
from ctxvault.errors import CapabilityDegraded
from ctxvault.similarity import normalize, tokenize
from ctxvault.store import VaultStore
from ctxvault.types import format_ts, parse_ts
from ctxvault.vault import Vault

START = "2026-01-05T10:00:00.000000Z"


class HashEmbedder:
    """Bag-of-words embedder: each token hashed into one of ``dim`` buckets.

    Identical texts embed identically; texts sharing most tokens are close.
    """

    def __init__(self, dim: int = 64):
        self.dim = dim
        self.calls = 0

    def embed(self, text):
        self.calls += 1
        vec = [0.0] * self.dim
        for tok in tokenize(normalize(text)):
            h = int(hashlib.md5(tok.encode("utf-8")).hexdigest(), 16)
            vec[h % self.dim] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0.0:
            return None
        return [v / norm for v in vec]


class FailingEmbedder:
    """Embedder whose backing model is missing."""

    def embed(self, text):
        raise CapabilityDegraded("sentence-transformers not installed")


class Clock:
    """Manually advanced clock returning canonical timestamps."""

    def __init__(self, start: str = START):
        self._now = parse_ts(start)

    def __call__(self) -> str:
        return format_ts(self._now)

    def advance(self, days: float = 0.0, seconds: float = 0.0) -> str:
        self._now += timedelta(days=days, seconds=seconds)
        return self()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def embedder():
    return HashEmbedder()


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    s = VaultStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def config():
    cfg = VaultConfig()
    cfg.vault.prune_on_open = False
    return cfg


@pytest.fixture
def vault(tmp_path, config, embedder, clock):
    """A vault on a temporary directory with an in-memory index."""
    v = Vault(
        VaultStore(":memory:"),
        str(tmp_path / "vault"),
        config=config,
        embedder=embedder,
        clock=clock,
    )
    yield v
    v.close()
