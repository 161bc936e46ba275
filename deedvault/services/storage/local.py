"""
DeedVault - Local Filesystem Object Store
Stores objects under <root>/<bucket>/<key>.
"""

import asyncio
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from deedvault.core.errors import ObjectConflictError, ObjectNotFoundError, StorageError
from deedvault.services.storage.base import (
    DEFAULT_CONTENT_TYPE,
    ObjectStore,
    StoredObject,
    validate_key,
)

logger = logging.getLogger(__name__)


class LocalObjectStore(ObjectStore):
    """
    Filesystem-backed store.
    Writes are staged in a temp file beside the target. Upserts rename it
    over the key (last writer wins); upsert-disabled writes hard-link it to
    the key, so the first writer wins even across processes sharing the
    directory and a failed write never leaves a partial object behind.
    """

    def __init__(self, root: str | Path = "storage_records"):
        self.root = Path(root)

    @property
    def provider_name(self) -> str:
        return "local"

    def _path(self, key: str, bucket: str) -> Path:
        validate_key(bucket)
        return self.root / bucket / validate_key(key)

    def _write(self, path: Path, data: bytes, upsert: bool) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        # One staging file per write
        with tempfile.NamedTemporaryFile(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
        ) as f:
            tmp_path = Path(f.name)
        try:
            tmp_path.write_bytes(data)
            if upsert:
                os.replace(tmp_path, path)
            else:
                # link() claims the key atomically and fails if it exists
                os.link(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        bucket: str,
        upsert: bool = False,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        path = self._path(key, bucket)
        try:
            await asyncio.to_thread(self._write, path, data, upsert)
        except FileExistsError:
            raise ObjectConflictError(key)
        except OSError as e:
            raise StorageError(f"Local write failed: {e}", key=key)

        return StoredObject(
            key=key,
            bucket=bucket,
            size=len(data),
            content_type=content_type or DEFAULT_CONTENT_TYPE,
            stored_at=datetime.now(timezone.utc),
        )

    async def get(self, key: str, *, bucket: str) -> bytes:
        path = self._path(key, bucket)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            raise ObjectNotFoundError(key)
        except OSError as e:
            raise StorageError(f"Local read failed: {e}", key=key)

    async def remove(self, keys: list[str], *, bucket: str) -> list[str]:
        removed = []
        for key in keys:
            path = self._path(key, bucket)
            try:
                await asyncio.to_thread(path.unlink)
                removed.append(key)
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning("Failed to remove %s/%s: %s", bucket, key, e)
        return removed

    async def exists(self, key: str, *, bucket: str) -> bool:
        return self._path(key, bucket).is_file()
