"""
Tests for ctxvault.files — paths, front matter mapping, atomic writes.
"""

import os

import frontmatter
import pytest

from ctxvault.categories import KindRegistry
from ctxvault.errors import ValidationError
from ctxvault.files import (
    entry_filename,
    entry_path,
    file_sha256,
    kind_from_path,
    parse_entry,
    read_entry_file,
    remove_entry_file,
    render_entry,
    safe_join,
    slugify,
    write_entry_file,
)
from ctxvault.types import Entry, SourceFile

NOW = "2026-02-01T00:00:00.000000Z"


@pytest.fixture
def registry():
    return KindRegistry()


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


class TestPaths:
    def test_slugify(self):
        assert slugify("SQLite WAL mode!") == "sqlite-wal-mode"
        assert slugify("***") == "entry"
        assert len(slugify("x" * 200)) == 60

    def test_filename_uses_id_suffix(self):
        e = Entry(kind="insight", title="Pool sizing", body="b")
        name = entry_filename(e)
        assert name.startswith("pool-sizing-")
        assert name.endswith(e.id[-8:].lower() + ".md")

    def test_entry_path_layout(self, tmp_path, registry):
        root = str(tmp_path)
        e = Entry(kind="contact", category="entity", title="Alice", body="b")
        p = entry_path(root, registry, e)
        rel = os.path.relpath(p, os.path.realpath(root))
        assert rel.split(os.sep)[:2] == ["entities", "contact"]
        p2 = entry_path(root, registry, e, folder="team")
        assert os.path.relpath(p2, os.path.realpath(root)).split(os.sep)[:3] == [
            "entities", "contact", "team",
        ]

    def test_safe_join_refuses_escape(self, tmp_path):
        with pytest.raises(ValidationError):
            safe_join(str(tmp_path), "..", "outside.md")
        with pytest.raises(ValidationError):
            entry_path(str(tmp_path), KindRegistry(),
                       Entry(kind="note", body="b"), folder="../../x")

    def test_kind_from_path(self, tmp_path):
        root = str(tmp_path)
        assert kind_from_path(root, os.path.join(root, "events", "log", "a.md")) == ("event", "log")
        assert kind_from_path(root, os.path.join(root, "knowledge", "a.md")) is None
        assert kind_from_path(root, os.path.join(root, "misc", "x", "a.md")) is None


# ---------------------------------------------------------------------------
# Front matter mapping
# ---------------------------------------------------------------------------


class TestRenderParse:
    def test_render_front_matter_keys(self):
        e = Entry(
            kind="decision", title="Use WAL", body="Because readers.",
            tags=["sqlite"], tier="durable", identity_key=None,
            created_at="2026-01-01T00:00:00.000000Z",
            updated_at="2026-01-02T00:00:00.000000Z",
            supersedes=["OLD"], meta={"k": "v"},
            source_files=[SourceFile(path="src/db.py", hash="abc")],
        )
        post = frontmatter.loads(render_entry(e))
        assert post.content.strip() == "Because readers."
        assert post["id"] == e.id
        assert post["title"] == "Use WAL"
        assert post["tags"] == ["sqlite"]
        assert post["supersedes"] == ["OLD"]
        assert post["source_files"] == [{"path": "src/db.py", "hash": "abc"}]
        assert "identity_key" not in post.metadata
        assert "kind" not in post.metadata

    def test_round_trip(self, registry):
        e = Entry(
            kind="decision", category="knowledge", title="Use WAL",
            body="Because readers.", tags=["sqlite", "db"], tier="durable",
            source="chat", owner="alice",
            created_at="2026-01-01T00:00:00.000000Z",
            updated_at="2026-01-02T00:00:00.000000Z",
            expires_at="2027-01-01T00:00:00.000000Z",
            meta={"confidence": 0.9},
            source_files=[SourceFile(path="a.py", hash="h")],
        )
        back = parse_entry(render_entry(e), "decision", registry, NOW)
        assert back == e

    def test_plain_markdown_title_from_heading(self, registry):
        text = "# Deploy checklist\n\nRun migrations first.\n"
        e = parse_entry(text, "note", registry, NOW)
        assert e.title == "Deploy checklist"
        assert e.created_at == NOW
        assert e.updated_at == NOW
        assert e.tier == "working"
        assert len(e.id) == 26

    def test_untitled_entry_keeps_empty_title(self, registry):
        e = Entry(kind="note", body="# Heading inside the body\n\nDetails.")
        text = render_entry(e)
        assert frontmatter.loads(text)["title"] == ""
        back = parse_entry(text, "note", registry, NOW)
        assert back.title == ""
        assert back.body == e.body

    def test_yaml_dates_and_csv_tags(self, registry):
        text = (
            "---\n"
            "created: 2026-01-03\n"
            "updated_at: 2026-01-04T05:06:07Z\n"
            "tags: a, b\n"
            "---\n"
            "body\n"
        )
        e = parse_entry(text, "log", registry, NOW)
        assert e.category == "event"
        assert e.created_at == "2026-01-03T00:00:00.000000Z"
        assert e.updated_at == "2026-01-04T05:06:07.000000Z"
        assert e.tags == ["a", "b"]

    def test_stored_id_used_when_file_has_none(self, registry):
        e = parse_entry("just text", "note", registry, NOW, entry_id="KNOWN")
        assert e.id == "KNOWN"


# ---------------------------------------------------------------------------
# Read / write
# ---------------------------------------------------------------------------


class TestReadWrite:
    def test_write_returns_file_hash(self, tmp_path):
        e = Entry(kind="note", title="T", body="B")
        path = str(tmp_path / "knowledge" / "note" / "t.md")
        digest = write_entry_file(path, e)
        assert digest == file_sha256(path)
        text, digest2 = read_entry_file(path)
        assert digest2 == digest
        assert "B" in text

    def test_no_temp_files_left(self, tmp_path):
        path = str(tmp_path / "d" / "x.md")
        write_entry_file(path, Entry(kind="note", body="b"))
        assert os.listdir(tmp_path / "d") == ["x.md"]

    def test_remove(self, tmp_path):
        path = str(tmp_path / "x.md")
        write_entry_file(path, Entry(kind="note", body="b"))
        assert remove_entry_file(path) is True
        assert remove_entry_file(path) is False
        assert remove_entry_file(None) is False
