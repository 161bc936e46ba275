"""
DeedVault Object Store - Base Interface
Abstract base class for key-addressed blob storage providers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from deedvault.core.errors import ValidationError


DEFAULT_CONTENT_TYPE = "application/octet-stream"


@dataclass
class StoredObject:
    """Represents an object written to the store."""
    key: str
    bucket: str
    size: int
    content_type: str
    stored_at: datetime


def validate_key(key: str) -> str:
    """Reject keys that could escape their bucket."""
    if not key or not key.strip():
        raise ValidationError("Storage key is required")
    if key.startswith("/") or "\\" in key or "\x00" in key:
        raise ValidationError(f"Invalid storage key: {key!r}")
    if any(part in ("", ".", "..") for part in key.split("/")):
        raise ValidationError(f"Invalid storage key: {key!r}")
    return key


class ObjectStore(ABC):
    """
    Abstract base class for object stores.
    All providers (local filesystem, in-memory, R2) implement this.

    Write discipline:
    - upsert=True: last writer wins (chunk overwrites)
    - upsert=False: first writer wins, later writers get ObjectConflictError
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return provider name: local, memory, r2"""
        pass

    @abstractmethod
    async def put(
        self,
        key: str,
        data: bytes,
        *,
        bucket: str,
        upsert: bool = False,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        """Write an object. Raises ObjectConflictError if upsert is off and the key exists."""
        pass

    @abstractmethod
    async def get(self, key: str, *, bucket: str) -> bytes:
        """Read an object. Raises ObjectNotFoundError if the key is absent."""
        pass

    @abstractmethod
    async def remove(self, keys: list[str], *, bucket: str) -> list[str]:
        """Delete objects. Returns the keys actually removed."""
        pass

    @abstractmethod
    async def exists(self, key: str, *, bucket: str) -> bool:
        """Check if an object exists."""
        pass
