"""Tests for docstore.entity module."""

from datetime import datetime, timezone

import pytest

from docstore.entity import ListWithTotalCount, Version, Versioned, filter_entities, map_entities

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestVersion:
    def test_initial_is_one(self):
        assert Version.initial() == Version(1)

    def test_next_increments_by_one(self):
        assert Version(4).next() == Version(5)

    def test_ordering(self):
        assert Version(1) < Version(2)

    @pytest.mark.parametrize("value", [0, -1])
    def test_non_positive_rejected(self, value):
        with pytest.raises(ValueError):
            Version(value)


class TestVersioned:
    def test_with_item_keeps_bookkeeping(self):
        original = Versioned("a", Version(3), NOW, NOW)
        changed = original.with_item("b")
        assert changed.item == "b"
        assert changed.version == Version(3)
        assert changed.created_at == NOW


class TestListWithTotalCount:
    def test_map_keeps_total_count(self):
        page = ListWithTotalCount([1, 2], total_count=10)
        mapped = page.map(str)
        assert mapped.items == ["1", "2"]
        assert mapped.total_count == 10
        assert len(mapped) == 2


class TestListHelpers:
    def test_map_entities(self):
        entities = [Versioned("a", Version(1), NOW, NOW), Versioned("b", Version(2), NOW, NOW)]
        mapped = map_entities(entities, str.upper)
        assert [e.item for e in mapped] == ["A", "B"]
        assert [e.version for e in mapped] == [Version(1), Version(2)]

    def test_filter_entities(self):
        entities = [Versioned("keep", Version(1), NOW, NOW), Versioned("drop", Version(1), NOW, NOW)]
        assert [e.item for e in filter_entities(entities, lambda item: item == "keep")] == ["keep"]
