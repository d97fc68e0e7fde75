"""
Shared fixtures: a deterministic embedding function, a local in-memory
Qdrant collection and a store wrapper that injects failures.
"""

import hashlib
from pathlib import Path

import pytest

from repoindex.config import (
    Config,
    EmbeddingConfig,
    LoggingConfig,
    QdrantConfig,
    RepositoryConfig,
    ScanConfig,
    StateConfig,
    SyncConfig,
)
from repoindex.state import IndexStateStore
from repoindex.utils import VectorStoreError
from repoindex.vector_store import QdrantVectorStore

DIM = 8


def fake_embed(texts):
    """Deterministic 8-dimensional vectors derived from the text digest."""
    vectors = []
    for text in texts:
        digest = hashlib.sha256(text.encode("utf-8")).digest()
        vectors.append([b / 255.0 + 0.01 for b in digest[:DIM]])
    return vectors


def write(root: Path, identifier: str, content) -> Path:
    """Create a file under root, with parent directories."""
    path = root / identifier
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    return path


class FlakyStore:
    """
    Wraps a vector store, recording calls and failing on demand.

    Attributes:
        fail_upsert_for: Identifiers whose upsert batch raises
        fail_deletes: Every delete raises while set
        transient: Whether injected errors are retryable
        calls: (operation, ids) in call order
    """

    def __init__(self, inner):
        self.inner = inner
        self.fail_upsert_for: set[str] = set()
        self.fail_deletes = False
        self.transient = False
        self.calls: list[tuple[str, list[str]]] = []

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def upsert(self, vectors):
        self.calls.append(("upsert", [v.vector_id for v in vectors]))
        if any(v.identifier in self.fail_upsert_for for v in vectors):
            raise VectorStoreError("injected upsert failure", "upsert", transient=self.transient)
        self.inner.upsert(vectors)

    def delete(self, vector_ids):
        ids = list(vector_ids)
        self.calls.append(("delete", ids))
        if self.fail_deletes:
            raise VectorStoreError("injected delete failure", "delete", transient=self.transient)
        self.inner.delete(ids)


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path, repo):
    return Config(
        repository=RepositoryConfig(root=str(repo), name="demo"),
        scan=ScanConfig(git_history=False),
        embedding=EmbeddingConfig(
            vector_size=DIM,
            max_chunk_chars=200,
            chunk_overlap_chars=20,
            batch_size=4,
        ),
        state=StateConfig(path=str(tmp_path / "state" / "state.db")),
        qdrant=QdrantConfig(location=":memory:"),
        sync=SyncConfig(
            batch_size=2,
            max_attempts=3,
            base_delay_seconds=0.0,
            max_delay_seconds=0.0,
            max_workers=2,
        ),
        logging=LoggingConfig(file=None),
    )


@pytest.fixture
def qdrant(config):
    store = QdrantVectorStore(
        config.qdrant,
        collection_name=config.repository.collection_name,
        vector_size=DIM,
    )
    yield store
    store.close()


@pytest.fixture
def store(qdrant):
    return FlakyStore(qdrant)


@pytest.fixture
def state(config):
    return IndexStateStore(config.state.path, namespace=config.repository.collection_name)
