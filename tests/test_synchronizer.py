"""
Tests for batched, retried vector store writes.
"""

from datetime import datetime, timezone

from repoindex.config import SyncConfig
from repoindex.embedder import EmbeddingVector
from repoindex.synchronizer import BatchKind, VectorStoreSynchronizer
from repoindex.utils import RunDeadline, VectorStoreError


class ScriptedStore:
    """Fails the first N calls with the given error, then succeeds."""

    def __init__(self, failures=0, error=None):
        self.failures = failures
        self.error = error or VectorStoreError("unavailable", "upsert", transient=True)
        self.calls = 0
        self.upserted = []
        self.deleted = []

    def _maybe_fail(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error

    def upsert(self, vectors):
        self._maybe_fail()
        self.upserted.extend(v.vector_id for v in vectors)

    def delete(self, vector_ids):
        self._maybe_fail()
        self.deleted.extend(vector_ids)


def vectors(n):
    now = datetime.now(timezone.utc)
    return [
        EmbeddingVector(f"id-{i}", f"f{i}.py", [1.0], {"identifier": f"f{i}.py"}, now)
        for i in range(n)
    ]


def synchronizer(store, deadline=None, **overrides):
    settings = dict(batch_size=3, max_attempts=4, base_delay_seconds=0.0, max_delay_seconds=0.0)
    settings.update(overrides)
    return VectorStoreSynchronizer(store, SyncConfig(**settings), deadline)


class TestVectorStoreSynchronizer:
    """Test retry policy and outcomes."""

    def test_batches(self):
        sync = synchronizer(ScriptedStore())

        assert [len(b) for b in sync.batches(vectors(7))] == [3, 3, 1]

    def test_success_first_try(self):
        store = ScriptedStore()

        outcome = synchronizer(store).upsert_batch(vectors(2))

        assert outcome.ok
        assert outcome.kind == BatchKind.UPSERT
        assert outcome.attempts == 1
        assert outcome.ids == ["id-0", "id-1"]
        assert store.upserted == ["id-0", "id-1"]

    def test_transient_errors_are_retried(self):
        store = ScriptedStore(failures=2)

        outcome = synchronizer(store).delete_batch(["a", "b"])

        assert outcome.ok
        assert outcome.kind == BatchKind.DELETE
        assert outcome.attempts == 3
        assert store.deleted == ["a", "b"]

    def test_retries_exhausted(self):
        store = ScriptedStore(failures=10)

        outcome = synchronizer(store, max_attempts=3).upsert_batch(vectors(1))

        assert not outcome.ok
        assert outcome.attempts == 3
        assert "unavailable" in outcome.error
        assert not outcome.cancelled

    def test_non_transient_fails_immediately(self):
        store = ScriptedStore(failures=1, error=VectorStoreError("bad request", "upsert", transient=False))

        outcome = synchronizer(store).upsert_batch(vectors(1))

        assert not outcome.ok
        assert outcome.attempts == 1
        assert store.upserted == []

    def test_plain_connection_errors_are_transient(self):
        store = ScriptedStore(failures=1, error=ConnectionError("reset by peer"))

        assert synchronizer(store).upsert_batch(vectors(1)).ok

    def test_cancelled_run_stops_retrying(self):
        deadline = RunDeadline()
        deadline.cancel()
        store = ScriptedStore()

        outcome = synchronizer(store, deadline).upsert_batch(vectors(1))

        assert not outcome.ok
        assert outcome.cancelled
        assert store.calls == 0

    def test_deadline_cuts_backoff_short(self):
        store = ScriptedStore(failures=10)
        deadline = RunDeadline(timeout_seconds=0.05)

        outcome = synchronizer(
            store, deadline, max_attempts=10, base_delay_seconds=5.0, max_delay_seconds=5.0,
        ).upsert_batch(vectors(1))

        assert outcome.cancelled
        assert outcome.attempts < 10

    def test_empty_batch_is_a_no_op(self):
        store = ScriptedStore()

        outcome = synchronizer(store).delete_batch([])

        assert outcome.ok
        assert store.calls == 0
