"""
Tests for ctxvault.query — query sanitizing and the tiered FTS5 expression.
"""

import pytest

from ctxvault.query import NEAR_WINDOW, build_fts_query, sanitize_query
from ctxvault.store import VaultStore
from ctxvault.types import Entry, SearchFilters

NOW = "2026-02-01T00:00:00.000000Z"


class TestSanitize:
    def test_plain_terms(self):
        assert sanitize_query("SQLite WAL mode") == ["SQLite", "WAL", "mode"]

    def test_strips_fts_syntax(self):
        assert sanitize_query('title:"foo" AND (bar*)') == ["title:", "foo", "AND", "bar"]

    def test_splits_hyphens(self):
        assert sanitize_query("write-ahead log") == ["write", "ahead", "log"]

    def test_drops_symbol_only_terms(self):
        assert sanitize_query("*** ( ) -- !!") == []

    def test_empty(self):
        assert sanitize_query("") == []
        assert sanitize_query("   ") == []

    def test_unicode_words_kept(self):
        assert sanitize_query("sécurité réseau") == ["sécurité", "réseau"]


class TestBuildQuery:
    def test_empty(self):
        assert build_fts_query([]) == ""

    def test_single_term(self):
        assert build_fts_query(["wal"]) == '"wal"'

    def test_three_tiers(self):
        q = build_fts_query(["sqlite", "wal"])
        assert q == (
            f'"sqlite wal" OR NEAR("sqlite" "wal", {NEAR_WINDOW}) '
            'OR ("sqlite" AND "wal")'
        )

    def test_quotes_escaped(self):
        assert build_fts_query(['a"b']) == '"a""b"'


class TestAgainstFts5:
    """The built expressions must be accepted by SQLite FTS5."""

    @pytest.fixture
    def loaded(self, store):
        texts = [
            ("SQLite WAL mode", "write ahead logging for concurrent readers"),
            ("WAL archiving", "ship the log to object storage, unrelated to sqlite"),
            ("Vite for builds", "frontend tooling"),
        ]
        ids = []
        for title, body in texts:
            e = Entry(kind="note", title=title, body=body)
            store.insert_entry(e)
            ids.append(e.id)
        return store, ids

    def test_phrase_ranks_first(self, loaded):
        store, ids = loaded
        q = build_fts_query(sanitize_query("SQLite WAL"))
        hits = store.fts_candidates(q, SearchFilters(), NOW)
        assert hits[0][0] == ids[0]
        assert ids[2] not in [h[0] for h in hits]

    def test_hostile_input_is_safe(self, loaded):
        store, _ = loaded
        for text in ['"unbalanced', "NEAR(", "a AND", "col:val", "x^y ~z"]:
            terms = sanitize_query(text)
            store.fts_candidates(build_fts_query(terms), SearchFilters(), NOW,
                                 like_terms=terms)
