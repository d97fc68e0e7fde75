"""
Content fingerprints and vector identities.

Two hashes drive incremental indexing:

1. fingerprint (SHA256): hash(raw file bytes)
   - Sole criterion for "file unchanged"
   - Path independent: identical content always yields the same fingerprint
   - Colliding digests for different content are treated as unchanged

2. vector_id (UUIDv5): namespace + identifier + fingerprint
   - Deterministic, so an interrupted upsert is overwritten in place on retry
   - A changed file always gets a new id, distinct from the one it supersedes
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass

# Fixed namespace so ids stay stable across machines and releases
VECTOR_ID_NAMESPACE = uuid.UUID("6f1c1d8e-3b59-5a7e-9c1e-52c0a9d4b1a7")

DIGEST_SIZE = 32


@dataclass(frozen=True)
class Fingerprint:
    """
    SHA256 digest of a file's raw content.

    Attributes:
        digest: 32-byte digest.
    """
    digest: bytes

    def __post_init__(self):
        if len(self.digest) != DIGEST_SIZE:
            raise ValueError(f"Fingerprint digest must be {DIGEST_SIZE} bytes")

    @classmethod
    def of(cls, content: bytes) -> "Fingerprint":
        """Fingerprint raw bytes. No normalization is applied."""
        return cls(hashlib.sha256(content).digest())

    @classmethod
    def from_hex(cls, value: str) -> "Fingerprint":
        return cls(bytes.fromhex(value))

    @property
    def hex(self) -> str:
        """Lowercase hex form (64 characters), used for storage and payloads."""
        return self.digest.hex()

    def __str__(self) -> str:
        return self.hex


def vector_id_for(namespace: str, identifier: str, fingerprint: Fingerprint) -> str:
    """
    Derive the vector-store point id for one version of one file.

    Args:
        namespace: Collection / repository namespace.
        identifier: Repo-relative file path.
        fingerprint: Content fingerprint of this version.

    Returns:
        UUID string accepted by Qdrant as a point id.
    """
    identifier = identifier.replace("\\", "/")
    name = f"{namespace}|{identifier}|{fingerprint.hex}"
    return str(uuid.uuid5(VECTOR_ID_NAMESPACE, name))
