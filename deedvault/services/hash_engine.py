"""
Hash Engine - canonical content fingerprint of a stored document.

Fingerprints are SHA-256 digests encoded as lowercase hex. Recording is
idempotent by lifecycle status: a document already hashed (or past it)
returns its existing fingerprint without re-reading the object.
"""

import hashlib
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Iterator, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from deedvault.core.audit import AuditAction, AuditLogger, get_audit_logger
from deedvault.core.errors import ConsistencyError, NotFoundError, StorageError
from deedvault.models.models import HASHED_OR_LATER, DocumentHash, DocumentStatus, utcnow
from deedvault.services.records import RecordStore
from deedvault.services.storage.base import ObjectStore

logger = logging.getLogger(__name__)

HASH_ALGORITHM = "SHA-256"
HASH_BLOCK_SIZE = 1024 * 1024


def iter_blocks(data: bytes, block_size: int = HASH_BLOCK_SIZE) -> Iterator[bytes]:
    view = memoryview(data)
    for start in range(0, len(view), block_size):
        yield view[start:start + block_size]


def sha256_hex(data: bytes) -> str:
    """SHA-256 of data as lowercase hex."""
    return hashlib.sha256(data).hexdigest()


def sha256_hex_from_chunks(
    chunks: Iterable[bytes],
    on_progress: Optional[Callable[[int], None]] = None,
) -> str:
    """
    SHA-256 over a sequence of byte blocks.

    Args:
        chunks: Blocks in order
        on_progress: Called with the running byte count after each block
    """
    digest = hashlib.sha256()
    processed = 0
    for chunk in chunks:
        digest.update(chunk)
        processed += len(chunk)
        if on_progress:
            on_progress(processed)
    return digest.hexdigest()


@dataclass
class HashResult:
    document_id: str
    sha256_hash: str
    algorithm: str
    hash_id: str
    computed_at: Optional[datetime]
    file_size: Optional[int] = None
    already_hashed: bool = False
    duration_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "sha256_hash": self.sha256_hash,
            "algorithm": self.algorithm,
            "hash_id": self.hash_id,
            "computed_at": self.computed_at.isoformat() if self.computed_at else None,
            "file_size": self.file_size,
            "already_hashed": self.already_hashed,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class HashHistory:
    document_id: str
    hashes: list[DocumentHash] = field(default_factory=list)

    @property
    def latest(self) -> Optional[DocumentHash]:
        return self.hashes[-1] if self.hashes else None

    @property
    def total(self) -> int:
        return len(self.hashes)

    @property
    def hash_changes(self) -> int:
        unique = {h.sha256_hash for h in self.hashes}
        return max(len(unique) - 1, 0)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "hashes": [h.to_dict() for h in self.hashes],
            "latest": self.latest.to_dict() if self.latest else None,
            "total": self.total,
            "hash_changes": self.hash_changes,
        }


class HashEngine:
    """Computes and records document fingerprints."""

    def __init__(
        self,
        db: AsyncSession,
        store: ObjectStore,
        audit: Optional[AuditLogger] = None,
    ):
        self.records = RecordStore(db)
        self.store = store
        self.audit = audit or get_audit_logger()

    async def compute_and_record(self, document_id: str, actor_id: Optional[str] = None) -> HashResult:
        """
        Fingerprint a document's stored object and advance it to hashed.

        Raises:
            NotFoundError: unknown document
            StorageError: object unreadable; status is left unchanged
            ConsistencyError: document is past pending but has no fingerprint
        """
        started = time.perf_counter()
        document = await self.records.load_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)

        if document.document_status in HASHED_OR_LATER:
            # Idempotent by status only; the stored bytes are not re-checked
            existing = await self.records.load_latest_document_hash(document_id)
            if existing is None:
                raise ConsistencyError(
                    f"Document is '{document.status}' but has no recorded fingerprint",
                    document_id=document_id,
                )
            logger.info(
                "Document %s already hashed, returning existing fingerprint",
                document_id,
                extra={"document_id": document_id},
            )
            return HashResult(
                document_id=document_id,
                sha256_hash=existing.sha256_hash,
                algorithm=existing.algorithm,
                hash_id=existing.id,
                computed_at=document.hash_computed_at,
                file_size=document.file_size,
                already_hashed=True,
                duration_ms=(time.perf_counter() - started) * 1000,
            )

        try:
            data = await self.store.get(document.storage_key, bucket=document.storage_bucket)
        except StorageError as e:
            logger.error(
                "Failed to read %s for hashing: %s",
                document.storage_key,
                e.message,
                extra={"document_id": document_id, "key": document.storage_key},
            )
            await self.audit.record(
                action=AuditAction.DOCUMENT_HASH,
                actor_id=actor_id,
                resource_type="document",
                resource_id=document_id,
                success=False,
                error_message=e.message,
            )
            raise StorageError(
                f"Failed to read document object: {e.message}",
                key=document.storage_key,
                document_id=document_id,
            ) from e

        digest = sha256_hex_from_chunks(iter_blocks(data))
        computed_at = utcnow()

        # Fingerprint row and status transition commit together
        row = self.records.stage_document_hash(document_id, digest, HASH_ALGORITHM)
        await self.records.update_document_status(document, DocumentStatus.HASHED, hash_computed_at=computed_at)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Hashed document %s (%d bytes) in %.1fms",
            document_id,
            len(data),
            duration_ms,
            extra={"document_id": document_id, "duration_ms": round(duration_ms, 2)},
        )
        await self.audit.record(
            action=AuditAction.DOCUMENT_HASH,
            actor_id=actor_id,
            resource_type="document",
            resource_id=document_id,
            details={
                "hash": digest,
                "algorithm": HASH_ALGORITHM,
                "file_size": len(data),
                "duration_ms": round(duration_ms, 2),
            },
        )

        return HashResult(
            document_id=document_id,
            sha256_hash=digest,
            algorithm=HASH_ALGORITHM,
            hash_id=row.id,
            computed_at=computed_at,
            file_size=len(data),
            duration_ms=duration_ms,
        )

    async def hash_history(self, document_id: str) -> HashHistory:
        document = await self.records.load_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return HashHistory(document_id, await self.records.list_document_hashes(document_id))
