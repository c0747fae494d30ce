"""
Tests for the HTTP API using FastAPI's TestClient with an injected store.
"""

import pytest
from unittest.mock import MagicMock, patch
from fastapi.testclient import TestClient

from insight_store.api.main import app, get_store
from insight_store.core.errors import ConsistencyError, ProviderUnavailable, RateLimited, StorageError
from insight_store.core.knowledge_store import KnowledgeStore
from insight_store.core.schema import content_identity
from insight_store.vector.embeddings import DeterministicHashEmbedding
from insight_store.vector.index import BruteForceIndex


NIGERIA = {
    "title": "Nigeria GDP report",
    "content": "Nigeria GDP grew 3.2% in Q2",
    "source": "IMF",
    "sourceUrl": "https://imf.org/ng",
    "category": "economy",
    "timestamp": "2024-05-01T08:00:00+00:00",
}
KENYA = {
    "title": "Kenya inflation",
    "content": "Kenya inflation eased to 5.1%",
    "source": "CBK",
    "category": "economy",
    "timestamp": "2024-05-02T08:00:00+00:00",
}


@pytest.fixture
def store(tmp_path):
    return KnowledgeStore.open(
        tmp_path / "store",
        dimension=4,
        embedding_provider=DeterministicHashEmbedding(dimension=4),
        index_factory=lambda d: BruteForceIndex(d),
        fsync=False,
    )


@pytest.fixture
def client(store):
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def ingest_vector(client, payload, vector):
    body = {k: v for k, v in payload.items() if k != "sourceUrl"}
    return client.post("/documents", json={**body, "vector": vector})


class TestDocuments:

    def test_ingest_with_vector(self, client):
        response = ingest_vector(client, NIGERIA, [1, 0, 0, 0])

        assert response.status_code == 200
        assert response.json() == {
            "identity": content_identity(NIGERIA["content"], "IMF"),
            "status": "ingested",
        }

    def test_ingest_twice_is_unchanged(self, client):
        ingest_vector(client, NIGERIA, [1, 0, 0, 0])
        response = ingest_vector(client, NIGERIA, [1, 0, 0, 0])

        assert response.json()["status"] == "unchanged"

    def test_ingest_embeds_text(self, client, store):
        response = client.post("/documents", json=KENYA)

        assert response.status_code == 200
        assert response.json()["identity"] in store

    def test_ingest_rejects_empty_content(self, client):
        response = client.post("/documents", json={"content": "  ", "source": "IMF"})
        assert response.status_code == 422

    def test_ingest_dimension_mismatch(self, client):
        response = ingest_vector(client, NIGERIA, [1, 0])

        assert response.status_code == 422
        assert response.json()["error_type"] == "DimensionMismatchError"

    def test_get_document(self, client):
        identity = ingest_vector(client, NIGERIA, [1, 0, 0, 0]).json()["identity"]

        response = client.get(f"/documents/{identity}")

        assert response.status_code == 200
        assert response.json()["content"] == NIGERIA["content"]
        assert response.json()["category"] == "economy"

    def test_get_missing_document(self, client):
        assert client.get("/documents/unknown").status_code == 404

    def test_delete_document(self, client):
        identity = ingest_vector(client, NIGERIA, [1, 0, 0, 0]).json()["identity"]

        assert client.delete(f"/documents/{identity}").json() == {"identity": identity, "deleted": True}
        assert client.delete(f"/documents/{identity}").json() == {"identity": identity, "deleted": False}

    def test_batch_reports_per_document(self, client):
        response = client.post("/documents/batch", json={"documents": [NIGERIA, {"content": "", "source": "x"}, KENYA]})

        assert response.status_code == 200
        body = response.json()
        assert [outcome["status"] for outcome in body["outcomes"]] == ["ingested", "failed", "ingested"]
        assert body["summary"]["failed"] == 1

    def test_batch_rejects_empty(self, client):
        assert client.post("/documents/batch", json={"documents": []}).status_code == 422


class TestQuery:

    def test_scenario_query_by_vector(self, client):
        ingest_vector(client, NIGERIA, [1, 0, 0, 0])
        ingest_vector(client, KENYA, [0, 1, 0, 0])

        response = client.post("/query", json={"vector": [0.9, 0.1, 0, 0], "k": 1})

        assert response.status_code == 200
        results = response.json()["results"]
        assert len(results) == 1
        assert results[0]["metadata"]["source"] == "IMF"
        assert results[0]["score"] == pytest.approx(1 - results[0]["distance"])

    def test_query_with_filter(self, client):
        ingest_vector(client, NIGERIA, [1, 0, 0, 0])
        ingest_vector(client, {**KENYA, "category": "inflation"}, [0, 1, 0, 0])

        response = client.post("/query", json={"vector": [1, 0, 0, 0], "k": 5, "filters": {"category": "inflation"}})

        assert [r["metadata"]["source"] for r in response.json()["results"]] == ["CBK"]

    def test_query_by_text(self, client):
        client.post("/documents", json=NIGERIA)

        response = client.post("/query", json={"text": NIGERIA["content"], "k": 1})

        assert response.json()["results"][0]["content"] == NIGERIA["content"]

    def test_query_requires_vector_or_text(self, client):
        assert client.post("/query", json={"k": 1}).status_code == 422
        assert client.post("/query", json={"k": 1, "vector": [1, 0, 0, 0], "text": "x"}).status_code == 422

    def test_query_negative_k(self, client):
        assert client.post("/query", json={"vector": [1, 0, 0, 0], "k": -1}).status_code == 422

    def test_query_unknown_filter_field(self, client):
        response = client.post("/query", json={"vector": [1, 0, 0, 0], "filters": {"country": "NG"}})
        assert response.status_code == 422


class TestAdmin:

    def test_stats(self, client):
        ingest_vector(client, NIGERIA, [1, 0, 0, 0])

        body = client.get("/stats").json()

        assert body["total_documents"] == 1
        assert body["category_counts"] == {"economy": 1}
        assert body["dimension"] == 4

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["consistent"] is True

    def test_health_reports_inconsistency(self, client, store):
        with patch.object(store, "check_consistency", side_effect=ConsistencyError("diverged")):
            body = client.get("/health").json()

        assert body["status"] == "unhealthy"
        assert body["error"] == "diverged"

    def test_snapshot(self, client):
        ingest_vector(client, NIGERIA, [1, 0, 0, 0])

        body = client.post("/admin/snapshot").json()

        assert body["snapshot_id"] == 1
        assert body["document_count"] == 1

    def test_compact(self, client):
        identity = ingest_vector(client, NIGERIA, [1, 0, 0, 0]).json()["identity"]
        client.delete(f"/documents/{identity}")

        assert client.post("/admin/compact").json() == {"reclaimed": 1}


class TestErrorMapping:

    @pytest.fixture
    def failing_store(self):
        store = MagicMock()
        app.dependency_overrides[get_store] = lambda: store
        yield store
        app.dependency_overrides.clear()

    @pytest.mark.parametrize("error, status", [
        (ProviderUnavailable("down"), 503),
        (RateLimited("slow down", retry_after=3), 503),
        (StorageError("disk full"), 503),
        (ConsistencyError("diverged"), 500),
    ])
    def test_store_errors(self, failing_store, error, status):
        failing_store.snapshot.side_effect = error

        response = TestClient(app).post("/admin/snapshot")

        assert response.status_code == status
        assert response.json()["error_type"] == type(error).__name__

    def test_rate_limited_sets_retry_after(self, failing_store):
        failing_store.query_text.side_effect = RateLimited("slow down", retry_after=3)

        response = TestClient(app).post("/query", json={"text": "gdp"})

        assert response.headers["retry-after"] == "3"
