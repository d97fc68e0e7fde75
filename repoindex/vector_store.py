"""
Qdrant vector database boundary.

One collection per repository. Each point is one file version:
- id: deterministic UUID (see hasher.vector_id_for)
- vector: file embedding
- payload: identifier, language, metrics, fingerprint, indexed_at, sentiments

Every write waits for Qdrant to apply it, so a returned call is a confirmed
write. Errors surface as VectorStoreError with a ``transient`` flag that the
synchronizer uses to decide whether to retry.
"""

from __future__ import annotations

import threading
from contextlib import nullcontext
from typing import Any, Callable, Iterable, Optional, TypeVar

import grpc
import httpx
from loguru import logger
from qdrant_client import QdrantClient
from qdrant_client.http import models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.http.models import Distance, PayloadSchemaType, PointStruct, VectorParams

from .config import QdrantConfig
from .embedder import EmbeddingVector
from .utils import VectorStoreError

T = TypeVar("T")

_TRANSIENT_HTTP_STATUS = {408, 429}
_TRANSIENT_GRPC_CODES = {
    grpc.StatusCode.UNAVAILABLE,
    grpc.StatusCode.DEADLINE_EXCEEDED,
    grpc.StatusCode.RESOURCE_EXHAUSTED,
}

_SCROLL_PAGE = 256


def is_transient(error: BaseException) -> bool:
    """True for errors worth retrying: connectivity, timeouts, overload, 5xx."""
    if isinstance(error, VectorStoreError):
        return error.transient
    if isinstance(error, UnexpectedResponse):
        status = error.status_code or 0
        return status in _TRANSIENT_HTTP_STATUS or status >= 500
    if isinstance(error, grpc.RpcError):
        code = error.code() if callable(getattr(error, "code", None)) else None
        return code in _TRANSIENT_GRPC_CODES
    return isinstance(
        error,
        (ResponseHandlingException, httpx.TransportError, ConnectionError, TimeoutError),
    )


class QdrantVectorStore:
    """
    Qdrant collection holding one vector per indexed file.

    Usage:
        store = QdrantVectorStore(config.qdrant, "repo_myproject", vector_size=384)
        store.ensure_collection()
        store.upsert(vectors)
        store.delete(["..."])
    """

    def __init__(
        self,
        config: Optional[QdrantConfig] = None,
        collection_name: str = "repository",
        vector_size: int = 384,
        client: Optional[QdrantClient] = None,
    ):
        """
        Initialize Qdrant client.

        Args:
            config: Connection settings.
            collection_name: Collection for this repository.
            vector_size: Embedding dimension D.
            client: Pre-built client (tests, shared connections).
        """
        self.config = config or QdrantConfig()
        self.collection_name = collection_name
        self.vector_size = vector_size
        self.distance = self._parse_distance(self.config.distance)
        # The embedded local mode is not safe for concurrent writers
        self._guard = threading.Lock() if (client is None and self.config.embedded) else nullcontext()

        if client is not None:
            self._client = client
        elif self.config.path:
            self._client = QdrantClient(path=self.config.path)
            logger.debug(f"Using local Qdrant at {self.config.path}")
        elif self.config.location:
            self._client = QdrantClient(location=self.config.location)
            logger.debug(f"Using local Qdrant ({self.config.location})")
        else:
            self._client = QdrantClient(
                url=self.config.rest_url,
                grpc_port=self.config.grpc_port,
                prefer_grpc=self.config.prefer_grpc,
                api_key=self.config.api_key,
                timeout=self.config.timeout,
            )
            logger.info(f"Connected to Qdrant at {self.config.rest_url}")

    def close(self) -> None:
        """Close the Qdrant client."""
        self._client.close()

    def __enter__(self) -> "QdrantVectorStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run a client call, translating failures to VectorStoreError."""
        try:
            with self._guard:
                return func()
        except VectorStoreError:
            raise
        except Exception as e:
            raise VectorStoreError(
                f"Qdrant {operation} failed: {e}",
                operation=operation,
                transient=is_transient(e),
            ) from e

    # =========================================================================
    # Collection Management
    # =========================================================================

    def collection_exists(self) -> bool:
        return self._call(
            "collection_exists",
            lambda: self._client.collection_exists(self.collection_name),
        )

    def ensure_collection(self) -> bool:
        """
        Ensure the collection exists, creating it if needed.

        Returns:
            True if the collection was created.

        Raises:
            VectorStoreError: Qdrant unreachable, or the existing collection
                has a different vector size.
        """
        if self.collection_exists():
            self._check_vector_size()
            logger.debug(f"Collection {self.collection_name} already exists")
            return False

        self._call("create_collection", lambda: self._client.create_collection(
            collection_name=self.collection_name,
            vectors_config=VectorParams(size=self.vector_size, distance=self.distance),
        ))
        logger.info(f"Created collection: {self.collection_name}")

        if self.config.create_payload_indexes:
            self._create_payload_indexes()
        return True

    def _check_vector_size(self) -> None:
        info = self._call("get_collection", lambda: self._client.get_collection(self.collection_name))
        vectors = info.config.params.vectors
        size = getattr(vectors, "size", None)
        if size is not None and size != self.vector_size:
            raise VectorStoreError(
                f"Collection {self.collection_name} has vector size {size}, "
                f"embedding model produces {self.vector_size}",
                operation="ensure_collection",
            )

    def _create_payload_indexes(self) -> None:
        """Create payload indexes for efficient filtering."""
        indexed_fields = [
            ("identifier", PayloadSchemaType.KEYWORD),
            ("language", PayloadSchemaType.KEYWORD),
            ("fingerprint", PayloadSchemaType.KEYWORD),
        ]

        for field_name, field_type in indexed_fields:
            try:
                self._client.create_payload_index(
                    collection_name=self.collection_name,
                    field_name=field_name,
                    field_schema=field_type,
                )
            except Exception as e:
                logger.debug(f"Index may already exist for {field_name}: {e}")

    def drop_collection(self) -> bool:
        """Delete the collection. Returns True if it existed."""
        if not self.collection_exists():
            return False
        self._call("delete_collection", lambda: self._client.delete_collection(self.collection_name))
        logger.info(f"Deleted collection: {self.collection_name}")
        return True

    def collection_info(self) -> dict[str, Any] | None:
        """Point count and status, or None if the collection does not exist."""
        if not self.collection_exists():
            return None
        info = self._call("get_collection", lambda: self._client.get_collection(self.collection_name))
        return {
            "name": self.collection_name,
            "points_count": info.points_count,
            "status": str(info.status),
            "vector_size": getattr(info.config.params.vectors, "size", None),
        }

    # =========================================================================
    # Point Operations
    # =========================================================================

    def upsert(self, vectors: list[EmbeddingVector]) -> None:
        """Upsert one batch and wait until it is applied."""
        if not vectors:
            return

        points = [
            PointStruct(id=v.vector_id, vector=v.vector, payload=v.payload)
            for v in vectors
        ]
        result = self._call("upsert", lambda: self._client.upsert(
            collection_name=self.collection_name,
            points=points,
            wait=True,
        ))
        self._check_status("upsert", result)

    def delete(self, vector_ids: Iterable[str]) -> None:
        """Delete points by id and wait until applied. Missing ids are ignored."""
        ids = list(vector_ids)
        if not ids:
            return

        result = self._call("delete", lambda: self._client.delete(
            collection_name=self.collection_name,
            points_selector=models.PointIdsList(points=ids),
            wait=True,
        ))
        self._check_status("delete", result)

    def existing_ids(self, vector_ids: Iterable[str]) -> set[str]:
        """Subset of ``vector_ids`` present in the collection."""
        ids = list(vector_ids)
        found: set[str] = set()
        for start in range(0, len(ids), _SCROLL_PAGE):
            page = ids[start:start + _SCROLL_PAGE]
            records = self._call("retrieve", lambda: self._client.retrieve(
                collection_name=self.collection_name,
                ids=page,
                with_payload=False,
                with_vectors=False,
            ))
            found.update(str(record.id) for record in records)
        return found

    def all_ids(self) -> set[str]:
        """Every point id in the collection."""
        ids: set[str] = set()
        offset = None
        while True:
            points, offset = self._call("scroll", lambda: self._client.scroll(
                collection_name=self.collection_name,
                limit=_SCROLL_PAGE,
                offset=offset,
                with_payload=False,
                with_vectors=False,
            ))
            ids.update(str(point.id) for point in points)
            if offset is None or not points:
                break
        return ids

    def get_payload(self, vector_id: str) -> dict[str, Any] | None:
        records = self._call("retrieve", lambda: self._client.retrieve(
            collection_name=self.collection_name,
            ids=[vector_id],
            with_payload=True,
            with_vectors=False,
        ))
        return (records[0].payload or {}) if records else None

    def count(self) -> int:
        result = self._call("count", lambda: self._client.count(
            collection_name=self.collection_name,
            exact=True,
        ))
        return result.count

    def _check_status(self, operation: str, result: Any) -> None:
        status = getattr(result, "status", None)
        if status is not None and status != models.UpdateStatus.COMPLETED:
            raise VectorStoreError(
                f"Qdrant {operation} not completed (status={status})",
                operation=operation,
                transient=True,
            )

    @staticmethod
    def _parse_distance(distance: str) -> Distance:
        """Parse distance string to Qdrant Distance enum."""
        distance_map = {
            "COSINE": Distance.COSINE,
            "DOT": Distance.DOT,
            "EUCLID": Distance.EUCLID,
            "MANHATTAN": Distance.MANHATTAN,
        }
        return distance_map.get(distance.upper(), Distance.COSINE)
