"""
Tests for filtered top-k retrieval.
"""

import pytest
import numpy as np
from unittest.mock import patch

from insight_store.core.errors import DimensionMismatchError, ValidationError
from insight_store.core.knowledge_store import KnowledgeStore
from insight_store.core.query_engine import QueryEngine
from insight_store.core.schema import Document
from insight_store.vector.index import BruteForceIndex


def add(store, content, category, vector, source="IMF"):
    document = Document.create(content=content, source=source, category=category)
    store.ingest_embedded(document, vector)
    return document.identity


@pytest.fixture
def store():
    return KnowledgeStore(dimension=4, index=BruteForceIndex(dimension=4), candidate_factor=3, max_rounds=4)


@pytest.fixture
def skewed_store(store):
    """30 politics documents close to [1,0,0,0], 2 economy documents far away."""
    for i in range(30):
        add(store, f"politics {i}", "politics", [1.0, 0.01 * i, 0.0, 0.0])
    add(store, "economy a", "economy", [0.0, 0.0, 1.0, 0.1])
    add(store, "economy b", "economy", [0.0, 0.0, 0.1, 1.0])
    return store


class TestFiltering:

    def test_category_filter_only_returns_category(self):
        rng = np.random.default_rng(3)
        store = KnowledgeStore(dimension=8, index=BruteForceIndex(dimension=8))
        for i in range(200):
            add(store, f"doc {i}", ["economy", "politics", "health"][i % 3], rng.normal(size=8))

        for query in rng.normal(size=(20, 8)):
            results = store.query(query, filters={"category": "health"}, k=5)
            assert len(results) == 5
            assert all(result.metadata.category == "health" for result in results)

    def test_results_ordered_by_distance(self, skewed_store):
        results = skewed_store.query([1, 0, 0, 0], k=5)
        distances = [result.distance for result in results]
        assert distances == sorted(distances)

    def test_multi_value_filter(self, store):
        add(store, "a", "economy", [1, 0, 0, 0], source="IMF")
        add(store, "b", "economy", [1, 0.1, 0, 0], source="CBK")
        add(store, "c", "economy", [1, 0.2, 0, 0], source="Reuters")

        results = store.query([1, 0, 0, 0], filters={"source": ["CBK", "Reuters"]}, k=5)
        assert {result.metadata.source for result in results} == {"CBK", "Reuters"}

    def test_no_matching_records_skips_search(self, skewed_store):
        with patch.object(skewed_store.index, "search", wraps=skewed_store.index.search) as spy:
            assert skewed_store.query([1, 0, 0, 0], filters={"category": "sports"}, k=3) == []
        spy.assert_not_called()

    def test_fewer_matches_than_k(self, skewed_store):
        results = skewed_store.query([1, 0, 0, 0], filters={"category": "economy"}, k=10)
        assert len(results) == 2


class TestOverFetch:

    def test_selective_filter_widens_candidates(self, skewed_store):
        with patch.object(skewed_store.index, "search", wraps=skewed_store.index.search) as spy:
            results = skewed_store.query([1, 0, 0, 0], filters={"category": "economy"}, k=2)

        assert {result.metadata.category for result in results} == {"economy"}
        assert len(results) == 2
        assert [c.args[1] for c in spy.call_args_list] == [6, 18, 54]

    def test_unfiltered_single_round(self, skewed_store):
        with patch.object(skewed_store.index, "search", wraps=skewed_store.index.search) as spy:
            results = skewed_store.query([1, 0, 0, 0], k=3)

        assert len(results) == 3
        assert spy.call_count == 1

    def test_max_rounds_bounds_retries(self, skewed_store):
        engine = QueryEngine(skewed_store, candidate_factor=3, max_rounds=2)
        with patch.object(skewed_store.index, "search", wraps=skewed_store.index.search) as spy:
            results = engine.query([1, 0, 0, 0], filters={"category": "economy"}, k=2)

        assert spy.call_count == 2
        assert len(results) < 2

    def test_deadline_stops_further_rounds(self, skewed_store):
        with patch.object(skewed_store.index, "search", wraps=skewed_store.index.search) as spy:
            results = skewed_store.query([1, 0, 0, 0], filters={"category": "economy"}, k=2, timeout=0)

        assert spy.call_count == 1
        assert results == []

    def test_candidate_factor_minimum(self, store):
        with pytest.raises(ValidationError):
            QueryEngine(store, candidate_factor=2)


class TestValidation:

    @pytest.mark.parametrize("k", [-1, 1.5, "3", True])
    def test_bad_k(self, skewed_store, k):
        with patch.object(skewed_store.index, "search") as spy:
            with pytest.raises(ValidationError):
                skewed_store.query([1, 0, 0, 0], k=k)
        spy.assert_not_called()

    def test_wrong_dimension(self, skewed_store):
        with pytest.raises(DimensionMismatchError):
            skewed_store.query([1, 0], k=3)

    def test_unknown_filter_field(self, skewed_store):
        with pytest.raises(ValidationError):
            skewed_store.query([1, 0, 0, 0], filters={"country": "NG"}, k=3)

    def test_negative_timeout(self, skewed_store):
        with pytest.raises(ValidationError):
            skewed_store.query([1, 0, 0, 0], k=3, timeout=-1)

    def test_k_zero(self, skewed_store):
        assert skewed_store.query([1, 0, 0, 0], k=0) == []

    def test_zero_query_vector(self, skewed_store):
        assert skewed_store.query([0, 0, 0, 0], k=3) == []

    def test_empty_store(self, store):
        assert store.query([1, 0, 0, 0], k=3) == []
