"""
Vector store synchronization with batching and retry.

Applies one bounded batch at a time:
- transient errors retry with exponential backoff + jitter, capped at max_delay
- non-transient errors fail the batch immediately
- backoff sleeps end early when the run is cancelled

Batches never raise; the outcome says whether the write was confirmed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Optional, Protocol, TypeVar

from loguru import logger

from .config import SyncConfig
from .embedder import EmbeddingVector
from .utils import RunCancelled, RunDeadline, batched, call_with_retry
from .vector_store import is_transient

T = TypeVar("T")


class VectorStore(Protocol):
    """The writes the synchronizer needs from a vector store."""

    def upsert(self, vectors: list[EmbeddingVector]) -> None: ...

    def delete(self, vector_ids: Iterable[str]) -> None: ...


class BatchKind(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass
class BatchOutcome:
    """
    Result of applying one batch.

    Attributes:
        kind: upsert or delete
        ids: Vector ids in the batch
        ok: True once the store confirmed the write
        attempts: Calls made, including the first
        error: Last error message when not ok
        cancelled: The run ended before the batch was confirmed
    """
    kind: BatchKind
    ids: list[str]
    ok: bool
    attempts: int = 0
    error: Optional[str] = None
    cancelled: bool = False


class VectorStoreSynchronizer:
    """
    Writes batches of upserts and deletions to the vector store.

    Usage:
        sync = VectorStoreSynchronizer(store, config.sync, deadline)
        for batch in sync.batches(vectors):
            outcome = sync.upsert_batch(batch)
    """

    def __init__(
        self,
        store: VectorStore,
        config: Optional[SyncConfig] = None,
        deadline: Optional[RunDeadline] = None,
    ):
        self.store = store
        self.config = config or SyncConfig()
        self.deadline = deadline or RunDeadline()

    def batches(self, items: Iterable[T]) -> Iterator[list[T]]:
        """Split items into batches of ``sync.batch_size``."""
        return batched(items, self.config.batch_size)

    def upsert_batch(self, vectors: list[EmbeddingVector]) -> BatchOutcome:
        """Upsert one batch of vectors."""
        ids = [v.vector_id for v in vectors]
        return self._apply(BatchKind.UPSERT, ids, lambda: self.store.upsert(vectors))

    def delete_batch(self, vector_ids: list[str]) -> BatchOutcome:
        """Delete one batch of vector ids."""
        ids = list(vector_ids)
        return self._apply(BatchKind.DELETE, ids, lambda: self.store.delete(ids))

    def _apply(self, kind: BatchKind, ids: list[str], write) -> BatchOutcome:
        outcome = BatchOutcome(kind=kind, ids=ids, ok=False)
        if not ids:
            outcome.ok = True
            return outcome

        def attempt():
            outcome.attempts += 1
            write()

        try:
            call_with_retry(
                attempt,
                max_attempts=self.config.max_attempts,
                base_delay=self.config.base_delay_seconds,
                max_delay=self.config.max_delay_seconds,
                should_retry=is_transient,
                deadline=self.deadline,
            )
            outcome.ok = True
            logger.debug(f"{kind.value} of {len(ids)} vectors confirmed after {outcome.attempts} attempt(s)")
        except RunCancelled as e:
            outcome.cancelled = True
            outcome.error = str(e)
            logger.warning(f"{kind.value} of {len(ids)} vectors cancelled: {e}")
        except Exception as e:
            outcome.error = str(e)
            logger.error(
                f"{kind.value} of {len(ids)} vectors failed after "
                f"{outcome.attempts} attempt(s): {e}"
            )
        return outcome
