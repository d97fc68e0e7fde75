"""
Configuration management for the repository indexer.

Loads and validates settings from repoindex.yaml with environment variable overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from .utils import ConfigError


DEFAULT_EXCLUDED_DIRS = [
    ".git", ".hg", ".svn", ".bzr",
    "__pycache__", "node_modules", ".venv", "venv",
    ".mypy_cache", ".pytest_cache", ".tox", ".idea", ".vscode",
    "target", "dist", "build",
]


@dataclass
class RepositoryConfig:
    """The repository to index."""
    root: str = "."
    name: str = ""
    collection_name: str = ""

    def __post_init__(self):
        if not self.name:
            self.name = _name_from_root(self.root)
        if not self.collection_name:
            self.collection_name = f"repo_{self.name}"

    def override(
        self,
        root: str | Path | None = None,
        name: Optional[str] = None,
        collection_name: Optional[str] = None,
    ) -> None:
        """
        Apply command-line values on top of the loaded section.

        A name or collection that was derived (not set in the file) is
        derived again from the new root or name; explicit ones are kept.
        """
        name_derived = self.name == _name_from_root(self.root)
        collection_derived = self.collection_name == f"repo_{self.name}"

        if root is not None:
            self.root = str(root)
            if name_derived:
                self.name = _name_from_root(self.root)
        if name:
            self.name = name
        if collection_name:
            self.collection_name = collection_name
        elif collection_derived:
            self.collection_name = f"repo_{self.name}"


def _name_from_root(root: str | Path) -> str:
    return Path(root).resolve().name or "repository"


@dataclass
class ScanConfig:
    """File discovery settings."""
    exclude_dirs: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDED_DIRS))
    exclude_patterns: list[str] = field(default_factory=lambda: [
        "*.min.js", "*.lock", "*.map",
    ])
    include_extensions: list[str] = field(default_factory=list)  # empty = all text files
    max_file_size_kb: int = 512
    git_history: bool = True


@dataclass
class EmbeddingConfig:
    """Embedding model and chunking settings."""
    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    vector_size: int = 384
    device: str = "cpu"
    max_chunk_chars: int = 2000
    chunk_overlap_chars: int = 200
    batch_size: int = 32
    normalize: bool = True


@dataclass
class StateConfig:
    """SQLite index state settings."""
    path: str = "./.repoindex/state.db"


@dataclass
class QdrantConfig:
    """Qdrant vector database settings."""
    url: Optional[str] = None
    host: str = "localhost"
    port: int = 6333
    grpc_port: int = 6334
    prefer_grpc: bool = False
    api_key: Optional[str] = None
    location: Optional[str] = None  # ":memory:" for the embedded local mode
    path: Optional[str] = None  # embedded local mode persisted on disk
    timeout: int = 30
    distance: str = "COSINE"
    create_payload_indexes: bool = True

    @property
    def rest_url(self) -> str:
        return self.url or f"http://{self.host}:{self.port}"

    @property
    def embedded(self) -> bool:
        return bool(self.location or self.path)

    @property
    def target(self) -> str:
        """Where points go, for log and status output."""
        return self.location or self.path or self.rest_url


@dataclass
class SyncConfig:
    """Batching, retry and concurrency settings."""
    batch_size: int = 64
    max_attempts: int = 4
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    max_workers: int = 4
    max_pending: int = 0  # 0 = 2 * max_workers
    run_timeout_seconds: Optional[float] = None
    verify_remote: bool = False


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    file: Optional[str] = "./logs/repoindex.log"
    max_size_mb: int = 50
    backup_count: int = 5


@dataclass
class Config:
    """
    Main configuration container.

    Loads from repoindex.yaml with optional environment variable overrides.
    Passed explicitly into the pipeline; nothing reads it from global state.
    """
    repository: RepositoryConfig = field(default_factory=RepositoryConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    state: StateConfig = field(default_factory=StateConfig)
    qdrant: QdrantConfig = field(default_factory=QdrantConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to repoindex.yaml. If None, uses default locations
                and falls back to built-in defaults when none exists.

        Returns:
            Config instance with loaded settings.
        """
        if config_path is None:
            candidates = [
                Path("repoindex.yaml"),
                Path(".repoindex/config.yaml"),
                Path.home() / ".config" / "repoindex" / "config.yaml",
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                logger.debug("No config file found, using defaults")
                config = cls()
                config._apply_env_overrides()
                return config

        config_path = Path(config_path)
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        logger.info(f"Loading config from {config_path}")

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config root must be a mapping: {config_path}")

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        """Create Config from a dictionary, then apply env overrides."""
        sections = {
            "repository": RepositoryConfig,
            "scan": ScanConfig,
            "embedding": EmbeddingConfig,
            "state": StateConfig,
            "qdrant": QdrantConfig,
            "sync": SyncConfig,
            "logging": LoggingConfig,
        }

        unknown = set(data) - set(sections)
        if unknown:
            raise ConfigError(f"Unknown config sections: {', '.join(sorted(unknown))}")

        kwargs = {}
        for name, section_cls in sections.items():
            kwargs[name] = _build_section(name, section_cls, data.get(name) or {})

        config = cls(**kwargs)
        config._apply_env_overrides()
        return config

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        # Qdrant overrides
        if os.getenv("QDRANT_URL"):
            self.qdrant.url = os.getenv("QDRANT_URL")
        if os.getenv("QDRANT_HOST"):
            self.qdrant.host = os.getenv("QDRANT_HOST")
        if os.getenv("QDRANT_PORT"):
            try:
                self.qdrant.port = int(os.getenv("QDRANT_PORT"))
            except ValueError as e:
                raise ConfigError(f"QDRANT_PORT must be an integer: {e}") from e
        if os.getenv("QDRANT_API_KEY"):
            self.qdrant.api_key = os.getenv("QDRANT_API_KEY")

        # State path override
        if os.getenv("REPOINDEX_STATE_PATH"):
            self.state.path = os.getenv("REPOINDEX_STATE_PATH")

        # Embedding overrides
        if os.getenv("EMBED_MODEL"):
            self.embedding.model_name = os.getenv("EMBED_MODEL")
        if os.getenv("EMBED_DEVICE"):
            self.embedding.device = os.getenv("EMBED_DEVICE")

    def validate(self) -> list[str]:
        """
        Validate configuration and return list of errors.
        Empty list means configuration is valid.
        """
        errors = []

        if not self.repository.root:
            errors.append("repository.root is required")
        if not self.repository.collection_name:
            errors.append("repository.collection_name is required")

        if self.scan.max_file_size_kb < 1:
            errors.append("scan.max_file_size_kb must be positive")

        emb = self.embedding
        if emb.vector_size < 1:
            errors.append("embedding.vector_size must be positive")
        if emb.max_chunk_chars < 100:
            errors.append("embedding.max_chunk_chars must be at least 100")
        if emb.chunk_overlap_chars < 0:
            errors.append("embedding.chunk_overlap_chars cannot be negative")
        if emb.chunk_overlap_chars >= emb.max_chunk_chars:
            errors.append("embedding.chunk_overlap_chars must be smaller than max_chunk_chars")
        if emb.batch_size < 1:
            errors.append("embedding.batch_size must be positive")

        if self.qdrant.location and self.qdrant.path:
            errors.append("qdrant.location and qdrant.path are mutually exclusive")
        if self.qdrant.distance.upper() not in ("COSINE", "DOT", "EUCLID", "MANHATTAN"):
            errors.append(f"qdrant.distance not supported: {self.qdrant.distance}")

        sync = self.sync
        if sync.batch_size < 1:
            errors.append("sync.batch_size must be positive")
        if sync.max_attempts < 1:
            errors.append("sync.max_attempts must be at least 1")
        if sync.max_workers < 1:
            errors.append("sync.max_workers must be at least 1")
        if sync.base_delay_seconds < 0 or sync.max_delay_seconds < 0:
            errors.append("sync retry delays cannot be negative")
        if sync.run_timeout_seconds is not None and sync.run_timeout_seconds <= 0:
            errors.append("sync.run_timeout_seconds must be positive")

        return errors


def _build_section(name: str, section_cls: type, values: dict[str, Any]) -> Any:
    """Instantiate one config section, rejecting unknown keys."""
    if not isinstance(values, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")

    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(
            f"Unknown keys in '{name}': {', '.join(sorted(unknown))}"
        )
    try:
        return section_cls(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid '{name}' section: {e}") from e
