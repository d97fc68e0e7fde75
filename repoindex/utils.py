"""
Logging and error handling utilities for the repository indexer.

Provides:
- Structured logging with rotation
- Custom exception classes
- Retry with exponential backoff that honours a run deadline
- Performance timing context manager
- Health checks for the state store and the vector store
"""

from __future__ import annotations

import random
import sqlite3
import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, TypeVar

from loguru import logger


# =============================================================================
# Logging Setup
# =============================================================================

# Custom format for pretty console output
CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{module}</magenta>:<cyan>{function}</cyan> | "
    "<level>{message}</level>"
)

# Detailed format for file logs
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{name}:{function}:{line} | "
    "{message}"
)

# Simple format for verbose mode
VERBOSE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = "./logs/repoindex.log",
    max_size_mb: int = 50,
    backup_count: int = 5,
    verbose: bool = False,
) -> None:
    """
    Configure logging for the indexer.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file. None disables the file sink.
        max_size_mb: Maximum log file size before rotation.
        backup_count: Number of rotated log files to keep.
        verbose: If True, use the simplified verbose console format.
    """
    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        format=VERBOSE_FORMAT if verbose else CONSOLE_FORMAT,
        level=level,
        colorize=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            str(log_path),
            format=FILE_FORMAT,
            level="DEBUG",  # Always log everything to file
            rotation=f"{max_size_mb} MB",
            retention=backup_count,
            compression="zip",
            enqueue=True,  # Thread-safe
        )

    logger.debug(f"Logging configured: level={level}, file={log_file}")


# =============================================================================
# Custom Exceptions
# =============================================================================

class RepoIndexError(Exception):
    """Base exception for repository indexing errors."""
    pass


class ConfigError(RepoIndexError):
    """Invalid or missing configuration. Always fatal."""
    pass


class ScanError(RepoIndexError):
    """Error walking the repository."""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class EmbeddingError(RepoIndexError):
    """Error generating the embedding for one file."""
    def __init__(self, message: str, identifier: Optional[str] = None):
        super().__init__(message)
        self.identifier = identifier


class VectorStoreError(RepoIndexError):
    """Error interacting with the vector store."""
    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.operation = operation
        self.transient = transient


class StateStoreError(RepoIndexError):
    """Error with the SQLite index state store."""
    pass


class RunCancelled(RepoIndexError):
    """The run deadline expired or the run was cancelled."""
    pass


# =============================================================================
# Run Deadline
# =============================================================================

class RunDeadline:
    """
    Shared cancellation signal for one indexing run.

    Workers poll ``cancelled`` and sleep through ``wait()`` so that a run-level
    timeout interrupts backoff sleeps as well as queued work.
    """

    def __init__(self, timeout_seconds: Optional[float] = None):
        self._event = threading.Event()
        self._expires_at = (
            time.monotonic() + timeout_seconds if timeout_seconds else None
        )

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self.expired:
            self._event.set()
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def cancel(self) -> None:
        self._event.set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if the run was cancelled."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        self._event.wait(seconds)
        return self.cancelled

    def check(self) -> None:
        """Raise RunCancelled if the run is over."""
        if self.cancelled:
            raise RunCancelled("Run deadline reached")


# =============================================================================
# Retry
# =============================================================================

T = TypeVar('T')


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: bool = True,
) -> float:
    """Exponential backoff delay for a zero-based attempt number."""
    delay = base_delay * (2 ** attempt)
    if jitter:
        delay = delay * (0.5 + random.random())
    return min(delay, max_delay)


def call_with_retry(
    func: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    should_retry: Callable[[Exception], bool] = lambda e: True,
    deadline: Optional[RunDeadline] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
) -> T:
    """
    Call ``func`` retrying failed attempts with exponential backoff.

    Args:
        func: Zero-argument callable to invoke.
        max_attempts: Attempt ceiling, including the first call.
        base_delay: Initial delay between retries (seconds).
        max_delay: Maximum delay between retries (seconds).
        should_retry: Predicate deciding whether an exception is retryable.
        deadline: Run deadline; backoff sleeps are cut short when it expires.
        on_retry: Callback invoked with (attempt_number, exception) before sleeping.

    Returns:
        The value returned by ``func``.

    Raises:
        The last exception when attempts are exhausted or it is not retryable,
        RunCancelled when the deadline expires between attempts.
    """
    for attempt in range(max_attempts):
        if deadline is not None:
            deadline.check()
        try:
            return func()
        except Exception as e:
            if attempt == max_attempts - 1 or not should_retry(e):
                raise

            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.2f}s"
            )
            if on_retry is not None:
                on_retry(attempt + 1, e)

            if deadline is not None:
                if deadline.wait(delay):
                    raise RunCancelled("Run deadline reached during backoff") from e
            else:
                time.sleep(delay)

    raise RuntimeError("max_attempts must be at least 1")


# =============================================================================
# Performance Timing
# =============================================================================

@contextmanager
def timed_operation(operation_name: str, log_level: str = "info"):
    """
    Context manager for timing operations.

    Example:
        with timed_operation("Scanning repository"):
            records = list(scanner.scan())
    """
    start_time = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start_time

        log_func = getattr(logger, log_level)
        log_func(f"{operation_name} completed in {elapsed:.3f}s")


# =============================================================================
# Batch Processing Utilities
# =============================================================================

def batched(items: Iterable[T], batch_size: int) -> Iterator[list[T]]:
    """Yield lists of at most ``batch_size`` items, preserving order."""
    if batch_size < 1:
        raise ValueError("batch_size must be positive")
    batch: list[T] = []
    for item in items:
        batch.append(item)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


# =============================================================================
# Health Check Utilities
# =============================================================================

@dataclass
class HealthStatus:
    """Health check status."""
    healthy: bool
    component: str
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


def check_vector_store_health(store: Any) -> HealthStatus:
    """Check that the vector store answers a collection lookup."""
    try:
        exists = store.collection_exists()
        return HealthStatus(
            healthy=True,
            component="qdrant",
            message="Qdrant is reachable",
            details={"collection_exists": exists},
        )
    except Exception as e:
        return HealthStatus(
            healthy=False,
            component="qdrant",
            message=str(e),
        )


def check_state_health(state_path: str) -> HealthStatus:
    """Check SQLite state store health."""
    try:
        conn = sqlite3.connect(state_path)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
        return HealthStatus(
            healthy=True,
            component="state",
            message="State database is accessible",
        )
    except Exception as e:
        return HealthStatus(
            healthy=False,
            component="state",
            message=str(e),
        )
