"""
Tests for the SQLite index state store.
"""

from datetime import datetime, timedelta, timezone

import pytest

from repoindex.state import IndexEntry, IndexStateStore, RunRecord
from repoindex.stats import FileMetrics


def entry(identifier, fingerprint="ab" * 32, vector_id="v-1", language="Python", metrics=None):
    return IndexEntry(
        identifier=identifier,
        fingerprint=fingerprint,
        vector_id=vector_id,
        language=language,
        metrics=metrics or FileMetrics(lines=3, code=2, blanks=1, size_bytes=20),
    )


@pytest.fixture
def store(tmp_path):
    return IndexStateStore(tmp_path / "nested" / "state.db", namespace="repo_demo")


class TestIndexEntries:
    """Test entry CRUD."""

    def test_get_missing(self, store):
        assert store.get("nope.py") is None

    def test_upsert_and_get(self, store):
        original = entry("a.py", metrics=FileMetrics(lines=5, code=4, blanks=1, commits=2, change_frequency=12.5))

        store.upsert(original)

        assert store.get("a.py") == original

    def test_upsert_replaces(self, store):
        store.upsert(entry("a.py", vector_id="old"))
        store.upsert(entry("a.py", fingerprint="cd" * 32, vector_id="new", language=None))

        current = store.get("a.py")
        assert current.vector_id == "new"
        assert current.fingerprint == "cd" * 32
        assert current.language is None
        assert store.count() == 1

    def test_delete(self, store):
        store.upsert(entry("a.py"))

        assert store.delete("a.py") is True
        assert store.delete("a.py") is False
        assert store.get("a.py") is None

    def test_list_all_sorted(self, store):
        for name in ["c.py", "a.py", "b/x.py"]:
            store.upsert(entry(name))

        assert [e.identifier for e in store.list_all()] == ["a.py", "b/x.py", "c.py"]

    def test_namespaces_are_isolated(self, tmp_path):
        path = tmp_path / "state.db"
        first = IndexStateStore(path, namespace="repo_one")
        second = IndexStateStore(path, namespace="repo_two")

        first.upsert(entry("a.py"))

        assert second.get("a.py") is None
        assert second.count() == 0
        assert first.count() == 1

    def test_survives_reopen(self, tmp_path):
        path = tmp_path / "state.db"
        IndexStateStore(path, namespace="ns").upsert(entry("a.py"))

        reopened = IndexStateStore(path, namespace="ns")

        assert reopened.get("a.py").vector_id == "v-1"

    def test_clear(self, store):
        store.upsert(entry("a.py"))
        store.upsert(entry("b.py"))

        assert store.clear() == 2
        assert store.list_all() == []


class TestRunHistory:
    """Test run records and stats."""

    def test_last_run(self, store):
        start = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert store.last_run() is None

        store.record_run(RunRecord(start, start + timedelta(seconds=5), "done", revision="abc", files_scanned=3))
        run_id = store.record_run(RunRecord(
            start + timedelta(hours=1),
            start + timedelta(hours=1, seconds=9),
            "partial_failure",
            files_embedded=2,
            failures=1,
        ))

        last = store.last_run()
        assert last.run_id == run_id
        assert last.status == "partial_failure"
        assert last.failures == 1
        assert last.finished_at == start + timedelta(hours=1, seconds=9)

    def test_get_stats(self, store):
        store.upsert(entry("a.py"))
        store.upsert(entry("b.py"))
        store.upsert(entry("c.rs", language="Rust"))
        store.upsert(entry("README", language=None))

        stats = store.get_stats()

        assert stats["entry_count"] == 4
        assert stats["languages"] == {"Python": 2, "Rust": 1, "unknown": 1}
        assert stats["db_size_bytes"] > 0
