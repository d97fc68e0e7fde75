"""
Incremental Repository Indexer

Scans a source repository, computes per-file statistics, detects changed
files by content fingerprint, and keeps their embeddings in a Qdrant
collection in step with the working tree.

Features:
- Content-addressed change detection (re-embed only what changed)
- Upsert-before-delete ordering for modified files
- Batched, retried vector store writes with a run deadline
- Language and git history statistics per file and per repository
"""

from .config import (
    Config,
    RepositoryConfig,
    ScanConfig,
    EmbeddingConfig,
    StateConfig,
    QdrantConfig,
    SyncConfig,
    LoggingConfig,
)
from .scanner import RepositoryScanner, FileRecord, ScanReport, SkipReason, SkippedFile
from .stats import (
    FileMetrics,
    FileStats,
    RepositorySummary,
    SummaryBuilder,
    analyze,
    detect_language,
)
from .history import GitHistory
from .hasher import Fingerprint, vector_id_for
from .state import IndexStateStore, IndexEntry, RunRecord
from .planner import Change, ChangePlan, ChangePlanner, plan_changes
from .embedder import EmbeddingGenerator, EmbeddingVector, SentenceTransformerEmbedder
from .vector_store import QdrantVectorStore, is_transient
from .synchronizer import VectorStoreSynchronizer, BatchOutcome, BatchKind
from .pipeline import (
    IndexingPipeline,
    RunResult,
    RunStats,
    RunPhase,
    FileFailure,
    FailureStage,
    summarize_repository,
)
from .utils import (
    setup_logging,
    timed_operation,
    RepoIndexError,
    ConfigError,
    ScanError,
    EmbeddingError,
    VectorStoreError,
    StateStoreError,
    RunCancelled,
    RunDeadline,
)

__all__ = [
    # Config
    "Config",
    "RepositoryConfig",
    "ScanConfig",
    "EmbeddingConfig",
    "StateConfig",
    "QdrantConfig",
    "SyncConfig",
    "LoggingConfig",
    # Scanning
    "RepositoryScanner",
    "FileRecord",
    "ScanReport",
    "SkipReason",
    "SkippedFile",
    # Statistics
    "FileMetrics",
    "FileStats",
    "RepositorySummary",
    "SummaryBuilder",
    "analyze",
    "detect_language",
    "GitHistory",
    # Hashing
    "Fingerprint",
    "vector_id_for",
    # State
    "IndexStateStore",
    "IndexEntry",
    "RunRecord",
    # Planning
    "Change",
    "ChangePlan",
    "ChangePlanner",
    "plan_changes",
    # Embedding
    "EmbeddingGenerator",
    "EmbeddingVector",
    "SentenceTransformerEmbedder",
    # Qdrant
    "QdrantVectorStore",
    "is_transient",
    "VectorStoreSynchronizer",
    "BatchOutcome",
    "BatchKind",
    # Pipeline
    "IndexingPipeline",
    "RunResult",
    "RunStats",
    "RunPhase",
    "FileFailure",
    "FailureStage",
    "summarize_repository",
    # Utils
    "setup_logging",
    "timed_operation",
    "RepoIndexError",
    "ConfigError",
    "ScanError",
    "EmbeddingError",
    "VectorStoreError",
    "StateStoreError",
    "RunCancelled",
    "RunDeadline",
]
