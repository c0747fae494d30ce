"""
Tests for the metadata side-table and filter predicates.
"""

import pytest

from insight_store.core.errors import ValidationError
from insight_store.core.metadata_store import MetadataStore, normalize_filter
from insight_store.core.schema import Document


def make_document(content, source="IMF", category="economy"):
    return Document.create(content=content, source=source, category=category, title=content[:20])


@pytest.fixture
def store():
    store = MetadataStore()
    for document in [
        make_document("Nigeria GDP report", "IMF", "economy"),
        make_document("Kenya inflation update", "CBK", "economy"),
        make_document("Ghana election results", "Reuters", "politics"),
    ]:
        store.put(document.identity, document.metadata(), document.content)
    return store


class TestNormalizeFilter:

    def test_none_is_empty(self):
        assert normalize_filter(None) == {}

    def test_scalar_and_list_values(self):
        assert normalize_filter({"category": "economy", "source": ["IMF", "CBK"]}) == {
            "category": {"economy"},
            "source": {"IMF", "CBK"},
        }

    def test_unknown_field(self):
        with pytest.raises(ValidationError, match="Unknown filter field"):
            normalize_filter({"country": "NG"})

    def test_non_string_value(self):
        with pytest.raises(ValidationError):
            normalize_filter({"category": 3})

    def test_non_mapping(self):
        with pytest.raises(ValidationError):
            normalize_filter(["category"])


class TestMetadataStore:

    def test_put_and_get(self, store):
        document = make_document("Nigeria GDP report", "IMF", "economy")

        record = store.get(document.identity)
        assert record.source == "IMF"
        assert store.get_content(document.identity) == "Nigeria GDP report"
        assert document.identity in store
        assert len(store) == 3

    def test_put_returns_previous(self, store):
        document = make_document("Nigeria GDP report", "IMF", "economy")
        updated = Document(**{**document.__dict__, "category": "markets"})

        previous = store.put(updated.identity, updated.metadata(), updated.content)

        assert previous.category == "economy"
        assert store.counts_by("category") == {"economy": 1, "markets": 1, "politics": 1}

    def test_put_identity_mismatch(self, store):
        document = make_document("x")
        with pytest.raises(ValidationError):
            store.put("other", document.metadata(), document.content)

    def test_filter_by_category(self, store):
        matched = store.filter({"category": "economy"})
        assert {store.get(identity).source for identity in matched} == {"IMF", "CBK"}

    def test_filter_is_conjunctive(self, store):
        matched = store.filter({"category": "economy", "source": "CBK"})
        assert len(matched) == 1

    def test_filter_set_membership(self, store):
        assert len(store.filter({"source": ["IMF", "Reuters"]})) == 2

    def test_filter_unindexed_field(self, store):
        document = make_document("Ghana election results", "Reuters", "politics")
        assert store.filter({"title": document.title}) == {document.identity}

    def test_filter_no_match(self, store):
        assert store.filter({"category": "sports"}) == set()

    def test_empty_filter_matches_all(self, store):
        assert store.filter({}) == store.identities()

    def test_matches(self, store):
        document = make_document("Kenya inflation update", "CBK", "economy")
        assert store.matches(document.identity, {"source": "CBK"})
        assert not store.matches(document.identity, {"source": "IMF"})
        assert not store.matches("missing", {})

    def test_remove_updates_indexes(self, store):
        document = make_document("Ghana election results", "Reuters", "politics")

        assert store.remove(document.identity).category == "politics"
        assert store.remove(document.identity) is None
        assert store.filter({"category": "politics"}) == set()
        assert "politics" not in store.counts_by("category")

    def test_counts_by_source(self, store):
        assert store.counts_by("source") == {"IMF": 1, "CBK": 1, "Reuters": 1}

    def test_copy_is_independent(self, store):
        clone = store.copy()
        clone.clear()

        assert len(clone) == 0
        assert len(store) == 3

    def test_load_replaces_contents(self, store):
        items = store.items()[:1]
        store.load(items)
        assert len(store) == 1
