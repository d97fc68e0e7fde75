"""
Embedding generation for indexed files.

An ``embed_fn`` takes a list of texts and returns one vector per text. The
generator turns a FileRecord into a single EmbeddingVector:

1. Decode content as UTF-8 (a leading BOM is dropped)
2. Prepend a small header (path, language)
3. Split long documents into overlapping windows
4. Embed windows in batches, average them, L2-normalize

Any failure is raised as EmbeddingError for that one file.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

import numpy as np
from loguru import logger

from .config import EmbeddingConfig
from .hasher import vector_id_for
from .scanner import FileRecord
from .stats import UNKNOWN_LANGUAGE, sentiments
from .utils import EmbeddingError

EmbedFn = Callable[[List[str]], List[List[float]]]


@dataclass
class EmbeddingVector:
    """
    A point ready for the vector store.

    Attributes:
        vector_id: Deterministic point id
        identifier: File the vector represents
        vector: Embedding of dimension D
        payload: Metadata stored alongside the vector
        indexed_at: Timestamp also recorded in the index entry
    """
    vector_id: str
    identifier: str
    vector: list[float]
    payload: dict[str, Any]
    indexed_at: datetime


def build_payload(record: FileRecord, indexed_at: datetime) -> dict[str, Any]:
    """Vector-store payload for one file."""
    payload = {
        "identifier": record.identifier,
        "language": record.language or UNKNOWN_LANGUAGE,
        "metrics": record.metrics.to_dict(),
        "fingerprint": record.fingerprint.hex,
        "indexed_at": indexed_at.isoformat(),
    }
    payload.update(sentiments(record.metrics))
    return payload


def split_text(text: str, max_chars: int, overlap: int) -> list[str]:
    """Fixed-size windows of ``max_chars`` with ``overlap`` characters shared."""
    if len(text) <= max_chars:
        return [text]
    step = max(1, max_chars - overlap)
    chunks = []
    for start in range(0, len(text), step):
        chunks.append(text[start:start + max_chars])
        if start + max_chars >= len(text):
            break
    return chunks


class EmbeddingGenerator:
    """
    Converts FileRecords into EmbeddingVectors with a pluggable embed_fn.

    Safe to call from worker threads as long as embed_fn is.
    """

    def __init__(self, embed_fn: EmbedFn, config: Optional[EmbeddingConfig] = None, namespace: str = ""):
        self.embed_fn = embed_fn
        self.config = config or EmbeddingConfig()
        self.namespace = namespace

    def document_text(self, record: FileRecord) -> str:
        """Decoded content with a short header."""
        try:
            content = record.content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise EmbeddingError(
                f"unsupported encoding: {e.reason} at byte {e.start}",
                record.identifier,
            ) from e

        language = record.language or UNKNOWN_LANGUAGE
        return f"File: {record.identifier}\nLanguage: {language}\n\n{content}"

    def embed(self, record: FileRecord) -> EmbeddingVector:
        """
        Embed one file.

        Raises:
            EmbeddingError: decoding failed, embed_fn failed, or it returned
                vectors of the wrong shape.
        """
        text = self.document_text(record)
        chunks = split_text(text, self.config.max_chunk_chars, self.config.chunk_overlap_chars)

        vectors: list[list[float]] = []
        for start in range(0, len(chunks), self.config.batch_size):
            batch = chunks[start:start + self.config.batch_size]
            try:
                result = self.embed_fn(batch)
            except EmbeddingError:
                raise
            except Exception as e:
                raise EmbeddingError(f"embedding backend failed: {e}", record.identifier) from e
            if result is None or len(result) != len(batch):
                raise EmbeddingError(
                    f"embedding backend returned {0 if result is None else len(result)} "
                    f"vectors for {len(batch)} texts",
                    record.identifier,
                )
            vectors.extend(result)

        vector = self._combine(vectors, record.identifier)
        indexed_at = datetime.now(timezone.utc)

        if len(chunks) > 1:
            logger.debug(f"Embedded {record.identifier} from {len(chunks)} chunks")

        return EmbeddingVector(
            vector_id=vector_id_for(self.namespace, record.identifier, record.fingerprint),
            identifier=record.identifier,
            vector=vector,
            payload=build_payload(record, indexed_at),
            indexed_at=indexed_at,
        )

    def _combine(self, vectors: list[list[float]], identifier: str) -> list[float]:
        """Average chunk vectors and validate the result."""
        try:
            matrix = np.asarray(vectors, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise EmbeddingError(f"malformed embedding output: {e}", identifier) from e

        dim = self.config.vector_size
        if matrix.ndim != 2 or matrix.shape[1] != dim:
            raise EmbeddingError(
                f"expected vectors of dimension {dim}, got shape {matrix.shape}",
                identifier,
            )
        if not np.all(np.isfinite(matrix)):
            raise EmbeddingError("embedding contains non-finite values", identifier)

        mean = matrix.mean(axis=0)
        if self.config.normalize:
            norm = np.linalg.norm(mean)
            if norm == 0:
                raise EmbeddingError("embedding has zero norm", identifier)
            mean = mean / norm
        return mean.tolist()


class SentenceTransformerEmbedder:
    """
    embed_fn backed by a local sentence-transformers model.

    The model is loaded on first use. Calls share one model and are
    serialized, so with this backend embedding throughput does not grow with
    sync.max_workers; the pool still overlaps embedding with Qdrant writes.
    """

    def __init__(
        self,
        model_name: str = "sentence-transformers/all-MiniLM-L6-v2",
        device: str = "cpu",
        normalize: bool = True,
    ):
        self.model_name = model_name
        self.device = device
        self.normalize = normalize
        self._model = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: EmbeddingConfig) -> "SentenceTransformerEmbedder":
        return cls(config.model_name, config.device, config.normalize)

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = SentenceTransformer(self.model_name, device=self.device)
            logger.info("Embedding model loaded.")
        return self._model

    @property
    def dimension(self) -> int:
        with self._lock:
            return self._get_model().get_sentence_embedding_dimension()

    def __call__(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        # Encoding is not guaranteed thread-safe
        with self._lock:
            model = self._get_model()
            embeddings = model.encode(
                texts,
                normalize_embeddings=self.normalize,
                show_progress_bar=False,
            )
        return embeddings.tolist()
