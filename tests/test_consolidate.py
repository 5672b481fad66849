"""
Tests for ctxvault.consolidate — hot tags and cold entries.
"""

from ctxvault.config import ConsolidateConfig
from ctxvault.consolidate import consolidation_scan, find_cold_entries, find_hot_tags
from ctxvault.types import Entry, HotTag

NOW = "2026-03-01T00:00:00.000000Z"


def add(store, created_at="2026-02-25T00:00:00.000000Z", **kw):
    kw.setdefault("kind", "note")
    e = Entry(created_at=created_at, updated_at=created_at, **kw)
    store.insert_entry(e)
    return e


def add_many(store, n, tag, **kw):
    return [add(store, body=f"{tag} note {i}", tags=[tag], **kw) for i in range(n)]


# ---------------------------------------------------------------------------
# Hot tags
# ---------------------------------------------------------------------------


class TestHotTags:
    def test_tag_over_threshold(self, store):
        add_many(store, 12, "auth")
        add_many(store, 3, "billing")
        assert find_hot_tags(store, NOW) == [HotTag("auth", 12, None)]

    def test_below_threshold(self, store):
        add_many(store, 9, "auth")
        assert find_hot_tags(store, NOW) == []
        assert find_hot_tags(store, NOW, tag_threshold=9) == [HotTag("auth", 9, None)]

    def test_recent_synthesis_suppresses(self, store):
        add_many(store, 12, "auth")
        add(store, kind="brief", body="auth summary", tags=["auth"],
            created_at="2026-02-27T00:00:00.000000Z")
        assert find_hot_tags(store, NOW) == []

    def test_old_synthesis_reports_whole_days(self, store):
        add_many(store, 12, "auth")
        add(store, kind="brief", body="auth summary", tags=["auth"],
            created_at="2026-02-18T12:00:00.000000Z")
        [hot] = find_hot_tags(store, NOW)
        assert hot.tag == "auth"
        assert hot.entry_count == 12
        assert hot.last_synthesis_age_days == 10

    def test_superseded_and_expired_not_counted(self, store):
        entries = add_many(store, 10, "auth")
        store.mark_superseded([entries[0].id], entries[1].id)
        assert find_hot_tags(store, NOW) == []
        add(store, body="late", tags=["auth"])
        add(store, body="gone", tags=["auth"], expires_at="2026-02-28T00:00:00.000000Z")
        assert [h.entry_count for h in find_hot_tags(store, NOW)] == [10]

    def test_order_by_count(self, store):
        add_many(store, 11, "auth")
        add_many(store, 14, "deploy")
        assert [h.tag for h in find_hot_tags(store, NOW)] == ["deploy", "auth"]

    def test_owner_scope(self, store):
        add_many(store, 12, "auth", owner="alice")
        assert find_hot_tags(store, NOW, owner="bob") == []
        assert len(find_hot_tags(store, NOW, owner="alice")) == 1


# ---------------------------------------------------------------------------
# Cold entries
# ---------------------------------------------------------------------------


class TestColdEntries:
    OLD = "2025-10-01T00:00:00.000000Z"
    OLDER = "2025-09-01T00:00:00.000000Z"

    def test_old_unread_entries(self, store):
        a = add(store, body="a", created_at=self.OLD)
        b = add(store, body="b", created_at=self.OLDER)
        add(store, body="recent")
        assert find_cold_entries(store, NOW) == [b.id, a.id]

    def test_protected_kinds_and_hits(self, store):
        add(store, kind="decision", body="d", created_at=self.OLD)
        add(store, kind="brief", body="s", created_at=self.OLD)
        read = add(store, body="read", created_at=self.OLD, hit_count=3)
        assert find_cold_entries(store, NOW) == []
        assert find_cold_entries(store, NOW, max_hit_count=3) == [read.id]

    def test_superseded_excluded(self, store):
        old = add(store, body="old", created_at=self.OLD)
        new = add(store, body="new", created_at=self.OLD)
        store.mark_superseded([old.id], new.id)
        assert find_cold_entries(store, NOW) == [new.id]


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------


class TestScan:
    def test_uses_config(self, store):
        add_many(store, 4, "auth")
        cold = add(store, body="x", created_at="2026-01-01T00:00:00.000000Z")
        cfg = ConsolidateConfig(tag_threshold=4, cold_max_age_days=30)
        report = consolidation_scan(store, NOW, cfg)
        assert [h.tag for h in report.hot_tags] == ["auth"]
        assert report.cold_ids == [cold.id]

    def test_read_only(self, store):
        add_many(store, 12, "auth")
        before = store.stats(NOW)
        consolidation_scan(store, NOW)
        assert store.stats(NOW) == before

    def test_vault_keeps_last_report(self, vault):
        for i in range(10):
            vault.save("insight", f"token refresh detail number {i}", tags=["auth"])
        report = vault.consolidation_scan()
        assert vault.last_consolidation is report
        assert report.hot_tags[0].tag == "auth"

    def test_background_scan(self, vault):
        for i in range(10):
            vault.save("insight", f"cache invalidation detail {i}", tags=["cache"])
        future = vault.schedule_consolidation_scan()
        report = future.result(timeout=10)
        assert [h.tag for h in report.hot_tags] == ["cache"]
        assert vault.last_consolidation is report
