"""
Tests for ctxvault.prune — physical removal of expired entries.
"""

import logging
import os

from ctxvault.prune import prune_expired
from ctxvault.types import Entry

NOW = "2026-03-01T00:00:00.000000Z"


def add(store, embedder, **kw):
    e = Entry(kind="note", **kw)
    e.embedding = embedder.embed(e.text)
    store.insert_entry(e)
    return e


class TestPruneExpired:
    def test_dry_run_lists_only(self, store, embedder):
        gone = add(store, embedder, body="old token", expires_at="2026-02-01T00:00:00.000000Z")
        add(store, embedder, body="keeper")
        result = prune_expired(store, NOW, dry_run=True)
        assert result.dry_run is True
        assert result.ids == [gone.id]
        assert result.count == 1
        assert store.get_entry(gone.id) is not None

    def test_removes_every_representation(self, store, embedder):
        gone = add(store, embedder, body="rotate the signing token",
                   tags=["secrets"], expires_at="2026-02-01T00:00:00.000000Z")
        keep = add(store, embedder, body="keep the audit log")
        result = prune_expired(store, NOW)
        assert result.ids == [gone.id]
        assert store.get_entry(gone.id) is None
        assert store.get_entry(keep.id) is not None
        s = store.stats(NOW)
        assert s["total_entries"] == 1
        assert s["embeddings_count"] == 1
        assert s["distinct_tags"] == 0
        assert s["expired_pending"] == 0
        assert store.fts_candidates('"signing"', None, NOW) == []

    def test_expiry_boundary_inclusive(self, store, embedder):
        e = add(store, embedder, body="x", expires_at=NOW)
        assert prune_expired(store, NOW).ids == [e.id]

    def test_future_expiry_kept(self, store, embedder):
        add(store, embedder, body="x", expires_at="2026-04-01T00:00:00.000000Z")
        assert prune_expired(store, NOW).count == 0

    def test_logs_count(self, store, embedder, caplog):
        add(store, embedder, body="a", expires_at="2026-02-01T00:00:00.000000Z")
        caplog.set_level(logging.INFO, logger="ctxvault.prune")
        prune_expired(store, NOW)
        assert "Pruned 1 expired entry" in caplog.text

    def test_nothing_to_do(self, store):
        result = prune_expired(store, NOW)
        assert result.count == 0
        assert result.ids == []
        assert result.errors == []


class TestVaultPrune:
    def test_file_removed(self, vault, clock):
        res = vault.save("note", "one-time deploy token", expires_at="2026-01-06T00:00:00Z")
        assert os.path.exists(res.file_path)
        clock.advance(days=2)
        result = vault.prune()
        assert result.ids == [res.id]
        assert not os.path.exists(res.file_path)
        assert vault.store.get_entry(res.id) is None

    def test_reindex_does_not_resurrect(self, vault, clock):
        res = vault.save("note", "ephemeral secret", expires_at="2026-01-06T00:00:00Z")
        clock.advance(days=2)
        vault.prune()
        stats = vault.reindex()
        assert stats.added == 0
        assert vault.store.get_entry(res.id) is None
