"""
DeedVault - In-Memory Object Store
Dict-backed store for development and tests.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional

from deedvault.core.errors import ObjectConflictError, ObjectNotFoundError
from deedvault.services.storage.base import (
    DEFAULT_CONTENT_TYPE,
    ObjectStore,
    StoredObject,
    validate_key,
)


class InMemoryObjectStore(ObjectStore):
    """Process-local store. The existence check and write happen under one lock."""

    def __init__(self):
        self._objects: dict[tuple[str, str], tuple[bytes, str]] = {}
        self._lock = asyncio.Lock()

    @property
    def provider_name(self) -> str:
        return "memory"

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        bucket: str,
        upsert: bool = False,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        validate_key(key)
        content_type = content_type or DEFAULT_CONTENT_TYPE
        async with self._lock:
            if not upsert and (bucket, key) in self._objects:
                raise ObjectConflictError(key)
            self._objects[(bucket, key)] = (bytes(data), content_type)

        return StoredObject(
            key=key,
            bucket=bucket,
            size=len(data),
            content_type=content_type,
            stored_at=datetime.now(timezone.utc),
        )

    async def get(self, key: str, *, bucket: str) -> bytes:
        try:
            return self._objects[(bucket, key)][0]
        except KeyError:
            raise ObjectNotFoundError(key)

    async def remove(self, keys: list[str], *, bucket: str) -> list[str]:
        removed = []
        async with self._lock:
            for key in keys:
                if self._objects.pop((bucket, key), None) is not None:
                    removed.append(key)
        return removed

    async def exists(self, key: str, *, bucket: str) -> bool:
        return (bucket, key) in self._objects

    def keys(self, bucket: str) -> list[str]:
        """All keys in a bucket, sorted."""
        return sorted(k for b, k in self._objects if b == bucket)
