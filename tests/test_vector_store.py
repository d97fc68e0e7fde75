"""
Tests for the Qdrant boundary, using Qdrant's local in-memory mode.
"""

from datetime import datetime, timezone

import httpx
import pytest
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from repoindex.config import QdrantConfig
from repoindex.embedder import EmbeddingVector
from repoindex.utils import VectorStoreError, check_vector_store_health
from repoindex.vector_store import QdrantVectorStore, is_transient

from conftest import DIM

IDS = [
    "5c56c793-69f3-4fbf-87e6-c4bf54c28c26",
    "9b5e5c3f-2b6a-4c55-9c42-9c3a3f5a7a01",
    "0e7b1f3a-8d2e-4b7e-a1f4-3c2d1e0f9a88",
]


def point(vector_id, identifier="a.py"):
    return EmbeddingVector(
        vector_id=vector_id,
        identifier=identifier,
        vector=[0.1] * DIM,
        payload={"identifier": identifier, "language": "Python"},
        indexed_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def store():
    store = QdrantVectorStore(QdrantConfig(location=":memory:"), "repo_test", vector_size=DIM)
    yield store
    store.close()


class TestCollection:
    """Test collection management."""

    def test_ensure_creates_once(self, store):
        assert not store.collection_exists()

        assert store.ensure_collection() is True
        assert store.ensure_collection() is False
        assert store.collection_exists()

    def test_vector_size_mismatch(self, store):
        store.ensure_collection()
        other = QdrantVectorStore(store.config, "repo_test", vector_size=DIM * 2, client=store._client)

        with pytest.raises(VectorStoreError, match="vector size"):
            other.ensure_collection()

    def test_info_and_drop(self, store):
        assert store.collection_info() is None
        store.ensure_collection()
        store.upsert([point(IDS[0])])

        info = store.collection_info()
        assert info["points_count"] == 1
        assert info["vector_size"] == DIM

        assert store.drop_collection() is True
        assert store.drop_collection() is False

    def test_health(self, store):
        health = check_vector_store_health(store)

        assert health.healthy
        assert health.details == {"collection_exists": False}


class TestPoints:
    """Test point operations."""

    def test_upsert_delete_roundtrip(self, store):
        store.ensure_collection()

        store.upsert([point(IDS[0], "a.py"), point(IDS[1], "b.py")])

        assert store.count() == 2
        assert store.all_ids() == {IDS[0], IDS[1]}
        assert store.get_payload(IDS[1])["identifier"] == "b.py"

        store.delete([IDS[0], IDS[2]])

        assert store.all_ids() == {IDS[1]}

    def test_upsert_is_idempotent(self, store):
        store.ensure_collection()

        store.upsert([point(IDS[0])])
        store.upsert([point(IDS[0])])

        assert store.count() == 1

    def test_existing_ids(self, store):
        store.ensure_collection()
        store.upsert([point(IDS[0])])

        assert store.existing_ids(IDS) == {IDS[0]}
        assert store.existing_ids([]) == set()

    def test_all_ids_pages_through_scroll(self, store):
        store.ensure_collection()
        ids = [f"00000000-0000-4000-8000-{i:012d}" for i in range(300)]

        for start in range(0, 300, 100):
            store.upsert([point(i) for i in ids[start:start + 100]])

        assert store.all_ids() == set(ids)

    def test_errors_are_wrapped(self, store):
        # Collection was never created
        with pytest.raises(VectorStoreError) as excinfo:
            store.upsert([point(IDS[0])])
        assert excinfo.value.operation == "upsert"
        assert not excinfo.value.transient


class TestTransientClassification:
    """Test which errors are worth retrying."""

    @pytest.mark.parametrize("status, expected", [
        (503, True),
        (500, True),
        (429, True),
        (408, True),
        (400, False),
        (404, False),
    ])
    def test_http_status(self, status, expected):
        error = UnexpectedResponse(status, "reason", b"", httpx.Headers())

        assert is_transient(error) is expected

    def test_connection_level_errors(self):
        assert is_transient(ConnectionError("refused"))
        assert is_transient(TimeoutError())
        assert is_transient(httpx.ConnectError("refused"))
        assert is_transient(ResponseHandlingException(OSError("broken pipe")))

    def test_other_errors(self):
        assert not is_transient(ValueError("bad vector"))
        assert is_transient(VectorStoreError("x", transient=True))
        assert not is_transient(VectorStoreError("x", transient=False))
