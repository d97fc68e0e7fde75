"""
Incremental indexing pipeline.

One run:
1. Scan the working tree, fingerprint and analyze each file
2. Classify each file against the index state (new / modified / unchanged)
3. Embed new and modified files on a bounded worker pool while scanning continues
4. Upsert embeddings in batches, delete vectors of removed files
5. Commit index entries only after the vector store confirmed the write

Key principles:
- Single writer: only the orchestrator thread touches the index state
- Upsert before delete: a modified file keeps its old vector until the new
  one is stored, and its entry moves to the new vector only once the old
  one is gone
- Forward only: failures leave files pending for the next run, nothing is
  rolled back
- Idempotent: vector ids are derived from content, so retried writes land
  on the same points
"""

from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .config import Config
from .embedder import EmbedFn, EmbeddingGenerator, EmbeddingVector
from .history import GitHistory
from .planner import Change, ChangePlan, ChangePlanner
from .scanner import FileRecord, RepositoryScanner
from .state import IndexEntry, IndexStateStore, RunRecord
from .stats import RepositorySummary, SummaryBuilder
from .synchronizer import BatchOutcome, VectorStoreSynchronizer
from .utils import (
    ConfigError,
    RunDeadline,
    ScanError,
    StateStoreError,
    VectorStoreError,
    timed_operation,
)
from .vector_store import QdrantVectorStore

_POLL_SECONDS = 0.5


class RunPhase(str, Enum):
    """Phase of an indexing run."""
    SCANNING = "scanning"
    PLANNING = "planning"
    EMBEDDING = "embedding"
    SYNCING = "syncing"
    COMMITTING = "committing"
    DONE = "done"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


class FailureStage(str, Enum):
    """Where a file failed."""
    SCAN = "scan"
    EMBED = "embed"
    UPSERT = "upsert"
    DELETE = "delete"
    COMMIT = "commit"
    CANCELLED = "cancelled"


@dataclass
class FileFailure:
    """A file left pending by this run."""
    identifier: str
    stage: FailureStage
    error: str


@dataclass
class RunStats:
    """Counters for one run."""
    files_scanned: int = 0
    files_skipped: int = 0
    files_unchanged: int = 0
    files_to_embed: int = 0
    files_embedded: int = 0
    vectors_upserted: int = 0
    vectors_deleted: int = 0
    entries_committed: int = 0
    entries_removed: int = 0
    batches_failed: int = 0
    duration_seconds: float = 0.0


@dataclass
class RunResult:
    """Result of an indexing run."""
    phase: RunPhase
    stats: RunStats = field(default_factory=RunStats)
    failures: list[FileFailure] = field(default_factory=list)
    revision: Optional[str] = None
    message: str = ""
    summary: Optional[RepositorySummary] = None
    plan: Optional[ChangePlan] = None

    @property
    def success(self) -> bool:
        return self.phase == RunPhase.DONE

    @property
    def exit_code(self) -> int:
        """0 on success, 1 on partial failure, 2 on fatal error."""
        if self.phase == RunPhase.DONE:
            return 0
        if self.phase == RunPhase.PARTIAL_FAILURE:
            return 1
        return 2


class _Task(str, Enum):
    EMBED = "embed"
    UPSERT = "upsert"
    SUPERSEDE = "supersede"
    DELETE = "delete"


class IndexingPipeline:
    """
    Orchestrates scanning, planning, embedding and vector store sync.

    Usage:
        with IndexingPipeline(config, embed_fn) as pipeline:
            result = pipeline.run()
        sys.exit(result.exit_code)

    The vector store and state store can be injected (tests, shared clients).
    """

    def __init__(
        self,
        config: Config,
        embed_fn: EmbedFn,
        *,
        store: Optional[Any] = None,
        state: Optional[IndexStateStore] = None,
    ):
        """
        Args:
            config: Full configuration.
            embed_fn: texts → vectors of dimension ``config.embedding.vector_size``.
            store: Vector store; defaults to a QdrantVectorStore from config.
            state: Index state; defaults to the SQLite store from config.

        Raises:
            ConfigError: configuration is invalid.
        """
        errors = config.validate()
        if errors:
            raise ConfigError("Invalid configuration: " + "; ".join(errors))

        self.config = config
        self.root = Path(config.repository.root)
        self.namespace = config.repository.collection_name

        self.store = store if store is not None else QdrantVectorStore(
            config.qdrant,
            collection_name=self.namespace,
            vector_size=config.embedding.vector_size,
        )
        self.state = state if state is not None else IndexStateStore(config.state.path, namespace=self.namespace)
        self.generator = EmbeddingGenerator(embed_fn, config.embedding, namespace=self.namespace)

        self._owns_store = store is None

    def close(self) -> None:
        """Close the vector store client if this pipeline created it."""
        if self._owns_store:
            self.store.close()

    def __enter__(self) -> "IndexingPipeline":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # =========================================================================
    # Indexing Run
    # =========================================================================

    def run(self) -> RunResult:
        """
        Run one incremental indexing pass.

        Fatal errors (unreadable root, unreachable vector store) end the run
        in FAILED before anything is written.

        Returns:
            RunResult; ``exit_code`` maps it to a process status.
        """
        started_at = datetime.now(timezone.utc)
        start_time = time.perf_counter()
        deadline = RunDeadline(self.config.sync.run_timeout_seconds)

        logger.info(f"Starting indexing run for {self.root} (collection={self.namespace})")

        try:
            scanner = RepositoryScanner(self.root, self.config.scan)
            scanner.check_root()
            self.store.ensure_collection()
            entries = self.state.list_all()
            missing = self._missing_vectors(entries) if self.config.sync.verify_remote else set()
        except (ScanError, VectorStoreError, StateStoreError) as e:
            logger.error(f"Indexing run aborted: {e}")
            return RunResult(phase=RunPhase.FAILED, message=str(e))

        history = GitHistory.load(self.root) if self.config.scan.git_history else None
        scanner.history = history

        run = _Run(self, scanner, entries, missing, deadline)
        try:
            result = run.execute()
        except ScanError as e:
            # Root vanished between the startup check and the walk
            logger.error(f"Indexing run aborted: {e}")
            result = RunResult(phase=RunPhase.FAILED, message=str(e))
        result.revision = history.revision if history else None
        result.stats.duration_seconds = time.perf_counter() - start_time

        self._record_run(result, started_at)

        logger.info(
            f"Indexing run {result.phase.value}: "
            f"{result.stats.files_embedded} embedded, "
            f"{result.stats.files_unchanged} unchanged, "
            f"{result.stats.vectors_upserted} upserted, "
            f"{result.stats.vectors_deleted} deleted, "
            f"{len(result.failures)} failures, "
            f"duration: {result.stats.duration_seconds:.2f}s"
        )
        return result

    def _missing_vectors(self, entries: list[IndexEntry]) -> set[str]:
        """Vector ids referenced by entries but absent from the store."""
        referenced = {entry.vector_id for entry in entries}
        if not referenced:
            return set()
        missing = referenced - self.store.existing_ids(referenced)
        if missing:
            logger.warning(f"{len(missing)} indexed files have no vector in the store; re-embedding")
        return missing

    def _record_run(self, result: RunResult, started_at: datetime) -> None:
        stats = result.stats
        try:
            self.state.record_run(RunRecord(
                started_at=started_at,
                finished_at=datetime.now(timezone.utc),
                status=result.phase.value,
                revision=result.revision,
                files_scanned=stats.files_scanned,
                files_embedded=stats.files_embedded,
                files_unchanged=stats.files_unchanged,
                entries_removed=stats.entries_removed,
                failures=len(result.failures),
            ))
        except StateStoreError as e:
            logger.error(f"Could not record run history: {e}")

    # =========================================================================
    # Maintenance
    # =========================================================================

    def reconcile(self) -> int:
        """
        Delete vectors that no index entry references.

        Such orphans are left behind when a run stops between a confirmed
        upsert and the matching commit. Must not run concurrently with run().

        Returns:
            Number of vectors deleted.
        """
        if not self.store.collection_exists():
            logger.info(f"Collection {self.namespace} does not exist, nothing to reconcile")
            return 0

        referenced = {entry.vector_id for entry in self.state.list_all()}
        orphans = sorted(self.store.all_ids() - referenced)
        if not orphans:
            logger.info("No orphan vectors found")
            return 0

        sync = VectorStoreSynchronizer(self.store, self.config.sync)
        deleted = 0
        for batch in sync.batches(orphans):
            outcome = sync.delete_batch(batch)
            if outcome.ok:
                deleted += len(batch)
        logger.info(f"Reconciled collection {self.namespace}: {deleted}/{len(orphans)} orphan vectors deleted")
        return deleted

    def summarize(self) -> RepositorySummary:
        """Repository statistics without touching any store."""
        return summarize_repository(self.config)

    def reset(self) -> int:
        """Drop the collection and clear the index state. Returns entries removed."""
        self.store.drop_collection()
        removed = self.state.clear()
        logger.info(f"Reset {self.namespace}: {removed} entries removed")
        return removed


def summarize_repository(config: Config) -> RepositorySummary:
    """Scan a repository and aggregate statistics (no embedding, no stores)."""
    root = Path(config.repository.root)
    history = GitHistory.load(root) if config.scan.git_history else None
    scanner = RepositoryScanner(root, config.scan, history)

    builder = SummaryBuilder(config.repository.name)
    with timed_operation(f"Summarizing {root}"):
        for record in scanner.scan():
            builder.add(record.language, record.metrics)

    if history is not None and history.available:
        return builder.build(history.revision, history.total_commits, history.contributors)
    return builder.build()


class _Run:
    """
    State of one run, driven from the orchestrator thread.

    Workers only embed and write to the vector store; every index state
    write happens in a completion handler on the calling thread.
    """

    def __init__(
        self,
        pipeline: IndexingPipeline,
        scanner: RepositoryScanner,
        entries: list[IndexEntry],
        missing: set[str],
        deadline: RunDeadline,
    ):
        self.pipeline = pipeline
        self.config = pipeline.config
        self.state = pipeline.state
        self.generator = pipeline.generator
        self.scanner = scanner
        self.deadline = deadline
        self.planner = ChangePlanner(entries, missing)
        self.sync = VectorStoreSynchronizer(pipeline.store, self.config.sync, deadline)
        self.summary = SummaryBuilder(self.config.repository.name)

        self.result = RunResult(phase=RunPhase.SCANNING)
        self.pending: dict[Future, tuple[_Task, Any]] = {}
        self.buffer: list[tuple[EmbeddingVector, IndexEntry]] = []

        sync_config = self.config.sync
        self.max_pending = sync_config.max_pending or 2 * sync_config.max_workers

    def execute(self) -> RunResult:
        self.executor = ThreadPoolExecutor(
            max_workers=self.config.sync.max_workers,
            thread_name_prefix="repoindex",
        )
        with self.executor:
            scan_complete = self._scan()

            self._enter(RunPhase.PLANNING)
            plan = self._plan(scan_complete)
            self.result.plan = plan

            self._enter(RunPhase.EMBEDDING)
            while self._has(_Task.EMBED):
                self._drain()
            self._flush()

            self._enter(RunPhase.SYNCING)
            while self.pending:
                self._drain()

        self._enter(RunPhase.COMMITTING)
        report = self.scanner.report
        self.result.stats.files_skipped = len(report.skipped)
        self.result.summary = self.summary.build()

        if not scan_complete:
            self._enter(RunPhase.PARTIAL_FAILURE)
            self.result.message = "Run deadline reached before the scan finished; deletions skipped"
        elif self.result.failures:
            self._enter(RunPhase.PARTIAL_FAILURE)
            self.result.message = f"{len(self.result.failures)} files left pending"
        else:
            self._enter(RunPhase.DONE)
        return self.result

    def _enter(self, phase: RunPhase) -> None:
        self.result.phase = phase
        logger.debug(f"Run phase: {phase.value}")

    # -------------------------------------------------------------------------
    # Scanning and planning
    # -------------------------------------------------------------------------

    def _scan(self) -> bool:
        """Scan and submit embeddings as files are classified. False if cut short."""
        stats = self.result.stats
        for record in self.scanner.scan():
            if self.deadline.cancelled:
                logger.warning("Run deadline reached during scan")
                return False

            stats.files_scanned += 1
            self.summary.add(record.language, record.metrics)

            change = self.planner.classify(record)
            if change is Change.UNCHANGED:
                stats.files_unchanged += 1
                continue

            stats.files_to_embed += 1
            while len(self.pending) >= self.max_pending:
                self._drain()
            self._submit(_Task.EMBED, record, self.generator.embed, record)

        for identifier in sorted(self.scanner.report.unreadable):
            self._fail(identifier, FailureStage.SCAN, "unreadable")
        return True

    def _plan(self, scan_complete: bool) -> ChangePlan:
        """Finish the plan and submit deletions of removed files."""
        if not scan_complete:
            # Without a full scan, absence does not mean deletion
            self._fail_remaining(FailureStage.CANCELLED, "run cancelled during scan")
            return self.planner.plan

        plan = self.planner.finish(held=self.scanner.report.unreadable)
        logger.info(
            f"Plan: {len(plan.to_embed)} to embed "
            f"({len(plan.superseded)} modified), "
            f"{len(plan.to_delete)} to delete, {len(plan.unchanged)} unchanged"
        )

        for batch in self.sync.batches(sorted(plan.to_delete.items())):
            ids = [vector_id for vector_id, _ in batch]
            self._submit(_Task.DELETE, batch, self.sync.delete_batch, ids)
        return plan

    # -------------------------------------------------------------------------
    # Work queue
    # -------------------------------------------------------------------------

    def _submit(self, task: _Task, context: Any, fn, *args) -> None:
        if self.deadline.cancelled:
            self._cancelled(task, context)
            return
        future = self.executor.submit(fn, *args)
        self.pending[future] = (task, context)

    def _has(self, task: _Task) -> bool:
        return any(kind == task for kind, _ in self.pending.values())

    def _drain(self) -> None:
        """Wait for at least one task (or the poll interval) and handle results."""
        if not self.pending:
            return
        done, _ = wait(self.pending, timeout=_POLL_SECONDS, return_when=FIRST_COMPLETED)
        for future in done:
            task, context = self.pending.pop(future)
            self._handle(task, context, future)

        if self.deadline.cancelled:
            self._cancel_queued()

    def _cancel_queued(self) -> None:
        """Cancel tasks that have not started yet."""
        for future in list(self.pending):
            if future.cancel():
                task, context = self.pending.pop(future)
                self._cancelled(task, context)

    def _flush(self) -> None:
        """Submit the buffered vectors as one upsert batch."""
        if not self.buffer:
            return
        batch, self.buffer = self.buffer, []
        vectors = [vector for vector, _ in batch]
        self._submit(_Task.UPSERT, batch, self.sync.upsert_batch, vectors)

    # -------------------------------------------------------------------------
    # Completion handlers (orchestrator thread only)
    # -------------------------------------------------------------------------

    def _handle(self, task: _Task, context: Any, future: Future) -> None:
        if task == _Task.EMBED:
            self._on_embedded(context, future)
            return

        outcome: BatchOutcome = future.result()
        if task == _Task.UPSERT:
            self._on_upserted(context, outcome)
        elif task == _Task.SUPERSEDE:
            self._on_superseded(context, outcome)
        else:
            self._on_deleted(context, outcome)

    def _on_embedded(self, record: FileRecord, future: Future) -> None:
        try:
            vector: EmbeddingVector = future.result()
        except Exception as e:
            logger.warning(f"Embedding failed for {record.identifier}: {e}")
            self._fail(record.identifier, FailureStage.EMBED, str(e))
            return

        self.result.stats.files_embedded += 1
        entry = IndexEntry(
            identifier=record.identifier,
            fingerprint=record.fingerprint.hex,
            vector_id=vector.vector_id,
            language=record.language,
            metrics=record.metrics,
            indexed_at=vector.indexed_at,
        )
        self.buffer.append((vector, entry))
        if len(self.buffer) >= self.config.sync.batch_size:
            self._flush()

    def _on_upserted(self, batch: list[tuple[EmbeddingVector, IndexEntry]], outcome: BatchOutcome) -> None:
        if not outcome.ok:
            self._batch_failed(outcome, [entry.identifier for _, entry in batch], FailureStage.UPSERT)
            return

        self.result.stats.vectors_upserted += len(batch)
        superseded = self.planner.plan.superseded
        replacing: list[tuple[str, IndexEntry]] = []

        for _, entry in batch:
            old_vector_id = superseded.get(entry.identifier)
            if old_vector_id is None:
                self._commit(entry)
            else:
                replacing.append((old_vector_id, entry))

        # New vectors are stored; now the versions they replace can go
        if replacing:
            old_ids = [old_id for old_id, _ in replacing]
            self._submit(_Task.SUPERSEDE, replacing, self.sync.delete_batch, old_ids)

    def _on_superseded(self, replacing: list[tuple[str, IndexEntry]], outcome: BatchOutcome) -> None:
        if not outcome.ok:
            # Old entry and old vector stay; the new vector is overwritten next run
            self._batch_failed(outcome, [entry.identifier for _, entry in replacing], FailureStage.DELETE)
            return

        self.result.stats.vectors_deleted += len(replacing)
        for _, entry in replacing:
            self._commit(entry)

    def _on_deleted(self, batch: list[tuple[str, str]], outcome: BatchOutcome) -> None:
        if not outcome.ok:
            self._batch_failed(outcome, [identifier for _, identifier in batch], FailureStage.DELETE)
            return

        self.result.stats.vectors_deleted += len(batch)
        for _, identifier in batch:
            try:
                self.state.delete(identifier)
                self.result.stats.entries_removed += 1
            except StateStoreError as e:
                self._fail(identifier, FailureStage.COMMIT, str(e))

    def _commit(self, entry: IndexEntry) -> None:
        try:
            self.state.upsert(entry)
            self.result.stats.entries_committed += 1
        except StateStoreError as e:
            self._fail(entry.identifier, FailureStage.COMMIT, str(e))

    # -------------------------------------------------------------------------
    # Failures
    # -------------------------------------------------------------------------

    def _fail(self, identifier: str, stage: FailureStage, error: str) -> None:
        self.result.failures.append(FileFailure(identifier, stage, error))

    def _batch_failed(self, outcome: BatchOutcome, identifiers: list[str], stage: FailureStage) -> None:
        self.result.stats.batches_failed += 1
        if outcome.cancelled:
            stage = FailureStage.CANCELLED
        for identifier in identifiers:
            self._fail(identifier, stage, outcome.error or "batch failed")

    def _cancelled(self, task: _Task, context: Any) -> None:
        """Record every file behind a task that will not run."""
        if task == _Task.EMBED:
            identifiers = [context.identifier]
        elif task == _Task.DELETE:
            identifiers = [identifier for _, identifier in context]
        else:
            identifiers = [entry.identifier for _, entry in context]
        for identifier in identifiers:
            self._fail(identifier, FailureStage.CANCELLED, "run cancelled")

    def _fail_remaining(self, stage: FailureStage, error: str) -> None:
        """Cancel queued work and mark buffered vectors as not stored."""
        self._cancel_queued()
        for _, entry in self.buffer:
            self._fail(entry.identifier, stage, error)
        self.buffer = []
