"""
Tests for ctxvault.sync — vault scanning and index reconciliation.
"""

import os
import shutil

import frontmatter
import pytest

from ctxvault.sync import scan_vault
from ctxvault.types import SearchFilters, _generate_id

ZERO = {"added": 0, "updated": 0, "removed": 0}


def write_raw(root, rel, text):
    path = os.path.join(root, rel)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return path


def raw_entry(entry_id, title, body, extra=""):
    return (
        "---\n"
        f"id: {entry_id}\n"
        f"title: {title}\n"
        f"{extra}"
        "---\n"
        f"{body}\n"
    )


@pytest.fixture
def saved(vault):
    """A vault with three entries written through the API."""
    ids = [
        vault.save("insight", "Connection pools must be sized per worker.",
                   title="Pool sizing", tags=["db"]).id,
        vault.save("decision", "We run SQLite in WAL mode.",
                   title="WAL mode", tags=["sqlite"]).id,
        vault.save("log", "Deployed release 4.2 to staging.",
                   title="Deploy 4.2").id,
    ]
    return vault, ids


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------


class TestScanVault:
    def test_finds_entry_files(self, tmp_path):
        root = str(tmp_path)
        write_raw(root, "knowledge/note/a.md", "a")
        write_raw(root, "events/log/2026/b.md", "b")
        files = scan_vault(root)
        assert [(f.category, f.kind) for f in files] == [("event", "log"), ("knowledge", "note")]
        assert files[0].rel_path == os.path.join("events", "log", "2026", "b.md")

    def test_skips_docs_hidden_and_underscore(self, tmp_path):
        root = str(tmp_path)
        write_raw(root, "knowledge/note/README.md", "doc")
        write_raw(root, "knowledge/note/.tmp-x.md", "partial")
        write_raw(root, "knowledge/_archive/old.md", "old")
        write_raw(root, "knowledge/.git/x.md", "x")
        write_raw(root, "knowledge/note/notes.txt", "txt")
        write_raw(root, "stray.md", "top level")
        write_raw(root, "other/note/x.md", "unknown category dir")
        assert scan_vault(root) == []


# ---------------------------------------------------------------------------
# Reindex
# ---------------------------------------------------------------------------


class TestReindex:
    def test_idempotent_after_saves(self, saved):
        vault, ids = saved
        first = vault.reindex()
        second = vault.reindex()
        assert first.counts() == {**ZERO, "unchanged": 3}
        assert second.counts() == {**ZERO, "unchanged": 3}

    def test_raw_files_added_then_unchanged(self, vault):
        write_raw(vault.root, "knowledge/note/a.md", "# Alpha\n\nfirst note")
        write_raw(vault.root, "knowledge/runbook/b.md", raw_entry(_generate_id(), "Beta", "second"))
        stats = vault.reindex()
        assert stats.added == 2
        assert stats.errors == []
        again = vault.reindex()
        assert again.counts() == {**ZERO, "unchanged": 2}
        titles = {r.entry.title for r in vault.search("note second").results}
        assert "Alpha" in titles

    def test_rebuild_from_empty_index(self, saved, tmp_path, config, embedder, clock):
        from ctxvault.store import VaultStore
        from ctxvault.vault import Vault

        vault, ids = saved
        fresh = Vault(VaultStore(":memory:"), vault.root, config=config,
                      embedder=embedder, clock=clock)
        try:
            stats = fresh.reindex()
            assert stats.added == 3
            assert {fresh.get(i).id for i in ids} == set(ids)
            assert fresh.get(ids[1]).tags == ["sqlite"]
            assert fresh.store.stats()["embeddings_count"] == 3
        finally:
            fresh.close()

    def test_edited_file_updated_and_reembedded(self, saved, embedder):
        vault, ids = saved
        path = vault.get(ids[0]).file_path
        with open(path, encoding="utf-8") as f:
            text = f.read()
        with open(path, "w", encoding="utf-8") as f:
            f.write(text.replace("sized per worker", "sized per pgbouncer shard"))
        calls = embedder.calls
        stats = vault.reindex()
        assert stats.updated == 1
        assert stats.unchanged == 2
        assert embedder.calls == calls + 1
        assert "pgbouncer" in vault.get(ids[0]).body
        assert vault.reindex().counts() == {**ZERO, "unchanged": 3}

    def test_metadata_only_edit_keeps_vector(self, saved, embedder):
        vault, ids = saved
        path = vault.get(ids[1]).file_path
        post = frontmatter.load(path)
        post["tags"] = ["sqlite", "storage"]
        with open(path, "w", encoding="utf-8") as f:
            f.write(frontmatter.dumps(post, sort_keys=False))
        calls = embedder.calls
        stats = vault.reindex()
        assert stats.updated == 1
        assert embedder.calls == calls
        assert vault.get(ids[1]).tags == ["sqlite", "storage"]

    def test_moved_file_keeps_id(self, saved):
        vault, ids = saved
        old = vault.get(ids[0]).file_path
        new = os.path.join(os.path.dirname(old), "archive-2026", os.path.basename(old))
        os.makedirs(os.path.dirname(new))
        os.rename(old, new)
        stats = vault.reindex()
        assert stats.updated == 1
        assert stats.removed == 0
        assert stats.added == 0
        assert vault.get(ids[0]).file_path == new
        assert vault.reindex().counts() == {**ZERO, "unchanged": 3}

    def test_copied_file_gets_fresh_id(self, saved):
        vault, ids = saved
        src = vault.get(ids[0]).file_path
        dst = os.path.join(os.path.dirname(src), "copy-of-pool.md")
        shutil.copyfile(src, dst)
        stats = vault.reindex()
        assert stats.added == 1
        assert stats.unchanged == 3
        copy_id, _ = vault.store.file_index()[dst]
        assert copy_id != ids[0]
        assert vault.get(ids[0]).file_path == src
        assert vault.reindex().counts() == {**ZERO, "unchanged": 4}

    def test_deleted_file_removed(self, saved):
        vault, ids = saved
        os.unlink(vault.get(ids[2]).file_path)
        stats = vault.reindex()
        assert stats.removed == 1
        assert vault.store.get_entry(ids[2]) is None

    def test_incremental_keeps_missing_rows(self, saved):
        vault, ids = saved
        os.unlink(vault.get(ids[2]).file_path)
        write_raw(vault.root, "knowledge/note/new.md", "# New\n\nfresh")
        stats = vault.reindex(full_sync=False)
        assert stats.added == 1
        assert stats.removed == 0
        assert vault.store.get_entry(ids[2]) is not None

    def test_full_pass_rebuilds_fulltext(self, saved):
        vault, ids = saved
        store = vault.store
        store._conn.execute("INSERT INTO vault_fts(vault_fts) VALUES ('delete-all')")
        assert store.fts_candidates('"pools"', None, vault.clock()) == []
        vault.reindex(full_sync=False)
        assert store.fts_candidates('"pools"', None, vault.clock()) == []
        stats = vault.reindex()
        assert stats.errors == []
        [(entry_id, _)] = store.fts_candidates('"pools"', None, vault.clock())
        assert entry_id == ids[0]

    def test_bad_file_collected_not_raised(self, saved):
        vault, _ = saved
        write_raw(vault.root, "knowledge/note/broken.md", "---\ntitle: [unclosed\n---\nbody\n")
        write_raw(vault.root, "knowledge/note/ok.md", "# Fine\n\nok")
        stats = vault.reindex()
        assert stats.added == 1
        assert len(stats.errors) == 1
        assert stats.errors[0]["path"].endswith("broken.md")

    def test_supersedes_in_front_matter(self, vault):
        old_id, new_id = _generate_id(), _generate_id()
        write_raw(vault.root, "knowledge/decision/old.md",
                  raw_entry(old_id, "Use MySQL", "we use mysql"))
        write_raw(vault.root, "knowledge/decision/new.md",
                  raw_entry(new_id, "Use Postgres", "we use postgres",
                            extra=f"supersedes: [{old_id}]\n"))
        vault.reindex()
        assert vault.get(old_id).superseded_by == new_id
        ids = {e.id for e in vault.store.list_entries(SearchFilters(), vault.clock())}
        assert ids == {new_id}

    def test_records_vault_root(self, vault):
        vault.reindex()
        assert vault.store.get_meta("vault_root") == vault.root
        assert vault.store.get_meta("last_reindex_at") == vault.clock()

    def test_missing_root_is_empty(self, vault):
        shutil.rmtree(vault.root)
        stats = vault.reindex()
        assert stats.counts() == {**ZERO, "unchanged": 0}
