"""
Tests for ctxvault.categories — the open kind registry.
"""

import pytest

from ctxvault.categories import CATEGORY_DIRS, DIR_CATEGORIES, KindRegistry, KindSpec


class TestDefaults:
    def test_builtin_categories(self):
        reg = KindRegistry()
        assert reg.category_of("insight") == "knowledge"
        assert reg.category_of("contact") == "entity"
        assert reg.category_of("session") == "event"

    def test_builtin_tiers_and_windows(self):
        reg = KindRegistry()
        assert reg.default_tier("decision") == "durable"
        assert reg.staleness_days("decision") == 365
        assert reg.default_tier("observation") == "ephemeral"
        assert reg.staleness_days("insight") is None

    def test_unregistered_kind_falls_back(self):
        reg = KindRegistry()
        assert reg.spec("runbook") == KindSpec()
        assert reg.category_of("runbook") == "knowledge"

    def test_kind_dir(self):
        reg = KindRegistry()
        assert reg.kind_dir("contact") == "entities/contact"
        assert reg.kind_dir("log") == "events/log"
        assert reg.kind_dir("runbook") == "knowledge/runbook"

    def test_dir_maps_are_inverse(self):
        for category, d in CATEGORY_DIRS.items():
            assert DIR_CATEGORIES[d] == category


class TestRegister:
    def test_register_new_kind(self):
        reg = KindRegistry()
        spec = reg.register("incident", category="event", staleness_days=30)
        assert spec.category == "event"
        assert spec.default_tier == "working"
        assert reg.category_of("incident") == "event"

    def test_override_keeps_omitted_fields(self):
        reg = KindRegistry()
        reg.register("decision", staleness_days=30)
        assert reg.default_tier("decision") == "durable"
        assert reg.staleness_days("decision") == 30

    def test_rejects_unknown_category(self):
        with pytest.raises(ValueError):
            KindRegistry().register("x", category="misc")

    def test_rejects_unknown_tier(self):
        with pytest.raises(ValueError):
            KindRegistry().register("x", default_tier="forever")

    def test_registries_are_independent(self):
        a = KindRegistry()
        b = KindRegistry()
        a.register("incident", category="event")
        assert b.category_of("incident") == "knowledge"
