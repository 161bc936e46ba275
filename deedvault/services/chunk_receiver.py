"""
Chunk Receiver & Reassembler

Accepts one chunk at a time under a derived temporary key, and on combine
downloads every chunk in index order, concatenates them, and commits the
final object exactly once (upsert disabled: the first combine wins).
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from deedvault.core.audit import AuditAction, AuditLogger, get_audit_logger
from deedvault.core.config import Settings, get_settings
from deedvault.core.errors import ObjectNotFoundError, StorageError, ValidationError
from deedvault.services.storage.base import ObjectStore, StoredObject, validate_key

logger = logging.getLogger(__name__)

CHUNK_KEY_SEPARATOR = ".part"


def chunk_key(final_key: str, index: int) -> str:
    """Temporary key of chunk `index` for `final_key`."""
    return f"{final_key}{CHUNK_KEY_SEPARATOR}{index}"


def chunk_keys(final_key: str, total_chunks: int) -> list[str]:
    return [chunk_key(final_key, i) for i in range(total_chunks)]


@dataclass
class ChunkReceipt:
    key: str
    chunk_index: int
    total_chunks: int
    size: int


@dataclass
class CombineResult:
    key: str
    bucket: str
    size: int
    total_chunks: int
    orphaned_keys: list[str] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def chunks_cleaned(self) -> bool:
        return not self.orphaned_keys


@dataclass
class CleanupResult:
    key: str
    requested: int
    removed: int


class ChunkReceiver:
    """Server side of the chunked transfer protocol."""

    def __init__(
        self,
        store: ObjectStore,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self.audit = audit or get_audit_logger()

    def _bucket(self, bucket: Optional[str]) -> str:
        return bucket or self.settings.default_bucket

    @staticmethod
    def _check_plan(final_key: str, total_chunks: int) -> None:
        validate_key(final_key)
        if total_chunks is None or total_chunks < 1:
            raise ValidationError(
                "totalChunks must be a positive integer",
                details=[{"loc": ["totalChunks"], "msg": "must be >= 1", "type": "value_error"}],
            )

    async def receive_chunk(
        self,
        final_key: str,
        index: int,
        total_chunks: int,
        data: bytes,
        bucket: Optional[str] = None,
    ) -> ChunkReceipt:
        """Store one chunk. Re-sending the same index overwrites it."""
        self._check_plan(final_key, total_chunks)
        if index is None or index < 0 or index >= total_chunks:
            raise ValidationError(
                f"chunkIndex must be between 0 and {total_chunks - 1}",
                details=[{"loc": ["chunkIndex"], "msg": "out of range", "type": "value_error"}],
            )
        if not data:
            raise ValidationError("Chunk payload is empty")

        bucket = self._bucket(bucket)
        key = chunk_key(final_key, index)
        try:
            await self.store.put(key, data, bucket=bucket, upsert=True)
        except StorageError as e:
            logger.error(
                "Chunk %d/%d write failed for %s: %s",
                index + 1,
                total_chunks,
                final_key,
                e.message,
                extra={"key": key, "chunk_index": index, "bucket": bucket},
            )
            raise StorageError(f"Failed to store chunk: {e.message}", key=key, chunk_index=index) from e

        logger.debug(
            "Stored chunk %d/%d for %s",
            index + 1,
            total_chunks,
            final_key,
            extra={"key": key, "chunk_index": index, "bucket": bucket},
        )
        return ChunkReceipt(key=key, chunk_index=index, total_chunks=total_chunks, size=len(data))

    async def combine(
        self,
        final_key: str,
        total_chunks: int,
        bucket: Optional[str] = None,
        actor_id: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> CombineResult:
        """
        Reassemble chunks 0..total_chunks-1 into final_key.

        A missing or unreadable chunk aborts the combine and leaves every
        chunk in place for a retry. Raises ObjectConflictError if final_key
        was already committed.
        """
        self._check_plan(final_key, total_chunks)
        bucket = self._bucket(bucket)
        started = time.perf_counter()

        parts: list[bytes] = []
        for index in range(total_chunks):
            key = chunk_key(final_key, index)
            try:
                parts.append(await self.store.get(key, bucket=bucket))
            except ObjectNotFoundError as e:
                raise ObjectNotFoundError(key, chunk_index=index) from e
            except StorageError as e:
                raise StorageError(f"Failed to read chunk: {e.message}", key=key, chunk_index=index) from e

        # Size is the sum of the chunks actually stored
        combined = b"".join(parts)
        stored: StoredObject = await self.store.put(
            final_key,
            combined,
            bucket=bucket,
            upsert=False,
            content_type=content_type,
        )

        keys = chunk_keys(final_key, total_chunks)
        orphaned: list[str] = []
        try:
            removed = set(await self.store.remove(keys, bucket=bucket))
            orphaned = [k for k in keys if k not in removed]
        except StorageError as e:
            logger.error("Chunk removal after combine failed: %s", e.message, extra={"key": final_key})
            orphaned = keys
        if orphaned:
            logger.warning(
                "Combine of %s left %d orphaned chunk(s): %s",
                final_key,
                len(orphaned),
                ", ".join(orphaned),
                extra={"key": final_key, "bucket": bucket},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Combined %d chunks into %s (%d bytes)",
            total_chunks,
            final_key,
            stored.size,
            extra={"key": final_key, "bucket": bucket, "duration_ms": round(duration_ms, 2)},
        )
        await self.audit.record(
            action=AuditAction.DOCUMENT_UPLOAD,
            actor_id=actor_id,
            resource_type="object",
            resource_id=final_key,
            details={
                "key": final_key,
                "bucket": bucket,
                "file_size": stored.size,
                "chunk_count": total_chunks,
                "orphaned_chunks": len(orphaned),
                "duration_ms": round(duration_ms, 2),
            },
        )

        return CombineResult(
            key=final_key,
            bucket=bucket,
            size=stored.size,
            total_chunks=total_chunks,
            orphaned_keys=orphaned,
            duration_ms=duration_ms,
        )

    async def cleanup(
        self,
        final_key: str,
        total_chunks: int,
        bucket: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> CleanupResult:
        """Delete every chunk of a plan. Returns how many were actually removed."""
        self._check_plan(final_key, total_chunks)
        bucket = self._bucket(bucket)

        removed = await self.store.remove(chunk_keys(final_key, total_chunks), bucket=bucket)
        if len(removed) < total_chunks:
            logger.info(
                "Cleanup of %s removed %d of %d chunk(s)",
                final_key,
                len(removed),
                total_chunks,
                extra={"key": final_key, "bucket": bucket},
            )

        await self.audit.record(
            action=AuditAction.CHUNK_CLEANUP,
            actor_id=actor_id,
            resource_type="object",
            resource_id=final_key,
            details={"bucket": bucket, "requested": total_chunks, "removed": len(removed)},
        )
        return CleanupResult(key=final_key, requested=total_chunks, removed=len(removed))

    async def put_direct(
        self,
        final_key: str,
        data: bytes,
        bucket: Optional[str] = None,
        actor_id: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        """Single-shot upload of a small file. Never overwrites."""
        validate_key(final_key)
        bucket = self._bucket(bucket)
        stored = await self.store.put(final_key, data, bucket=bucket, upsert=False, content_type=content_type)
        await self.audit.record(
            action=AuditAction.DOCUMENT_UPLOAD,
            actor_id=actor_id,
            resource_type="object",
            resource_id=final_key,
            details={"key": final_key, "bucket": bucket, "file_size": stored.size, "chunk_count": 1},
        )
        return stored
