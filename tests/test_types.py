"""
Tests for ctxvault.types — timestamps, ids, Entry and result objects.
"""

from datetime import date, datetime, timezone

import pytest

from ctxvault.types import (
    TIMESTAMP_FORMAT,
    VALID_TIERS,
    ConflictCandidate,
    Entry,
    PruneResult,
    ReindexStats,
    SaveResult,
    SearchResponse,
    SearchResult,
    _generate_id,
    _now_iso,
    age_days,
    format_ts,
    normalize_ts,
    parse_ts,
)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------


class TestTimestamps:
    def test_now_iso_format(self):
        ts = _now_iso()
        assert ts.endswith("Z")
        datetime.strptime(ts, TIMESTAMP_FORMAT)

    def test_format_naive_is_utc(self):
        assert format_ts(datetime(2026, 1, 2, 3, 4, 5)) == "2026-01-02T03:04:05.000000Z"

    def test_parse_z_and_offset(self):
        a = parse_ts("2026-01-02T03:04:05Z")
        b = parse_ts("2026-01-02T04:04:05+01:00")
        assert a == b
        assert a.tzinfo is not None

    def test_parse_date(self):
        assert parse_ts(date(2026, 3, 1)) == datetime(2026, 3, 1, tzinfo=timezone.utc)

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            parse_ts("yesterday")
        with pytest.raises(ValueError):
            parse_ts(12)

    def test_normalize_passes_none(self):
        assert normalize_ts(None) is None
        assert normalize_ts("") is None
        assert normalize_ts("2026-01-02") == "2026-01-02T00:00:00.000000Z"

    def test_lexical_order_is_time_order(self):
        a = normalize_ts("2026-01-02T03:04:05.500000Z")
        b = normalize_ts("2026-01-02T03:04:05.250000+00:00")
        assert b < a

    def test_age_days(self):
        assert age_days("2026-01-01T00:00:00Z", "2026-01-11T12:00:00Z") == pytest.approx(10.5)
        assert age_days("2026-01-11T00:00:00Z", "2026-01-01T00:00:00Z") == 0.0


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


class TestIds:
    def test_ulid_shape(self):
        uid = _generate_id()
        assert len(uid) == 26
        assert set(uid) <= set("0123456789ABCDEFGHJKMNPQRSTVWXYZ")

    def test_uniqueness(self):
        ids = {_generate_id() for _ in range(200)}
        assert len(ids) == 200

    def test_sorts_by_time(self):
        early = _generate_id(1_700_000_000_000)
        late = _generate_id(1_700_000_000_001)
        assert early < late


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


class TestEntry:
    def test_defaults(self):
        e = Entry(kind="insight", body="b")
        assert e.category == "knowledge"
        assert e.tier in VALID_TIERS
        assert e.tags == []
        assert e.superseded_by is None

    def test_text_joins_title(self):
        assert Entry(kind="note", title="T", body="B").text == "T\nB"
        assert Entry(kind="note", body="B").text == "B"

    def test_is_expired_boundary(self):
        e = Entry(kind="note", body="b", expires_at="2026-01-01T00:00:00.000000Z")
        assert e.is_expired("2026-01-01T00:00:00.000000Z")
        assert not e.is_expired("2025-12-31T23:59:59.000000Z")
        assert not Entry(kind="note", body="b").is_expired("2999-01-01T00:00:00.000000Z")

    def test_to_dict_omits_embedding(self):
        e = Entry(kind="note", body="b", embedding=[0.1, 0.2])
        assert "embedding" not in e.to_dict()
        assert e.to_dict(include_embedding=True)["embedding"] == [0.1, 0.2]


# ---------------------------------------------------------------------------
# Result objects
# ---------------------------------------------------------------------------


class TestResults:
    def test_search_result_dict(self):
        r = SearchResult(entry=Entry(kind="note", body="b"), score=0.0123456789,
                         stale=True, stale_reason="source file not found")
        d = r.to_dict()
        assert d["score"] == 0.012346
        assert d["stale_reason"] == "source file not found"

    def test_search_response_dict(self):
        resp = SearchResponse(notes=["n"])
        d = resp.to_dict()
        assert d == {"results": [], "conflicts": [], "notes": ["n"], "reindex_failed": False}

    def test_save_result_defaults(self):
        r = SaveResult()
        assert r.suggested_action == "ADD"
        assert r.candidates == []
        c = ConflictCandidate(id="X", title="t", kind="note",
                              similarity=0.97, suggested_action="SKIP")
        r.candidates.append(c)
        assert r.to_dict()["candidates"][0]["suggested_action"] == "SKIP"

    def test_reindex_counts(self):
        s = ReindexStats(added=1, unchanged=3)
        assert s.counts() == {"added": 1, "updated": 0, "removed": 0, "unchanged": 3}
        assert s.to_dict()["errors"] == []

    def test_prune_result(self):
        assert PruneResult(count=2, ids=["a", "b"]).to_dict()["count"] == 2
