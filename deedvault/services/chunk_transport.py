"""
Chunk Transport - how the planner reaches the chunk receiver.

InProcessChunkTransport calls a ChunkReceiver directly (same process,
used by services and tests). HttpChunkTransport drives the upload routes
over HTTP with httpx.
"""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from deedvault.core.errors import (
    DeedVaultError,
    NotFoundError,
    ObjectConflictError,
    PreconditionError,
    StorageError,
    ValidationError,
)
from deedvault.services.chunk_receiver import ChunkReceiver

logger = logging.getLogger(__name__)


class ChunkTransport(ABC):
    """Operations the chunk planner needs from the receiving side."""

    @abstractmethod
    async def put_direct(
        self,
        key: str,
        data: bytes,
        *,
        bucket: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> None:
        """Single-shot upload with upsert disabled."""

    @abstractmethod
    async def send_chunk(
        self,
        key: str,
        index: int,
        total_chunks: int,
        data: bytes,
        *,
        bucket: Optional[str] = None,
    ) -> None:
        """Send one chunk; resolves once the receiver has stored it."""

    @abstractmethod
    async def combine(
        self,
        key: str,
        total_chunks: int,
        *,
        bucket: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> None:
        """Ask the receiver to reassemble the chunks into key."""

    @abstractmethod
    async def delete_chunks(self, key: str, count: int, *, bucket: Optional[str] = None) -> int:
        """Delete chunks 0..count-1. Returns how many were removed."""


class InProcessChunkTransport(ChunkTransport):
    """Transport that calls a ChunkReceiver in the same process."""

    def __init__(self, receiver: ChunkReceiver, actor_id: Optional[str] = None):
        self.receiver = receiver
        self.actor_id = actor_id

    async def put_direct(self, key, data, *, bucket=None, content_type=None):
        await self.receiver.put_direct(
            key, data, bucket=bucket, actor_id=self.actor_id, content_type=content_type
        )

    async def send_chunk(self, key, index, total_chunks, data, *, bucket=None):
        await self.receiver.receive_chunk(key, index, total_chunks, data, bucket=bucket)

    async def combine(self, key, total_chunks, *, bucket=None, content_type=None):
        await self.receiver.combine(
            key, total_chunks, bucket=bucket, actor_id=self.actor_id, content_type=content_type
        )

    async def delete_chunks(self, key, count, *, bucket=None):
        result = await self.receiver.cleanup(key, count, bucket=bucket, actor_id=self.actor_id)
        return result.removed


class HttpChunkTransport(ChunkTransport):
    """Transport against the /api/uploads routes."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 60.0,
        actor_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.actor_id = actor_id
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        return {"X-Actor-Id": self.actor_id} if self.actor_id else {}

    def _handle_response(
        self,
        response: httpx.Response,
        key: str,
        chunk_index: Optional[int] = None,
    ) -> dict[str, Any]:
        """Parse a response, raising the matching DeedVaultError on failure."""
        if response.status_code < 400:
            if response.headers.get("content-type", "").startswith("application/json"):
                return response.json()
            return {}

        try:
            data = response.json()
        except json.JSONDecodeError:
            data = {"message": response.text}

        error_code = data.get("error")
        message = data.get("message") or data.get("detail") or f"HTTP {response.status_code}"

        if error_code == "conflict":
            raise ObjectConflictError(key)
        if response.status_code == 422:
            raise ValidationError(message, details=data.get("details"))
        if error_code == "precondition_failed":
            raise PreconditionError(message)
        if response.status_code == 404 and error_code == "not_found":
            raise NotFoundError("Object", key)
        if response.status_code >= 500 or error_code == "storage_error":
            raise StorageError(message, key=key, chunk_index=chunk_index)
        raise DeedVaultError(message, error_code=error_code or "error", status_code=response.status_code)

    async def _request(
        self,
        method: str,
        route: str,
        key: str,
        chunk_index: Optional[int] = None,
        **kwargs,
    ) -> dict[str, Any]:
        try:
            response = await self.client.request(
                method, f"/api/uploads/{route}", headers=self._headers(), **kwargs
            )
        except httpx.HTTPError as e:
            raise StorageError(f"Upload request failed: {e}", key=key, chunk_index=chunk_index) from e
        return self._handle_response(response, key, chunk_index)

    async def put_direct(self, key, data, *, bucket=None, content_type=None):
        form = {"path": key}
        if bucket:
            form["bucket"] = bucket
        await self._request(
            "POST",
            "direct",
            key,
            data=form,
            files={"file": (key.rsplit("/", 1)[-1], data, content_type or "application/octet-stream")},
        )

    async def send_chunk(self, key, index, total_chunks, data, *, bucket=None):
        form = {"path": key, "chunkIndex": str(index), "totalChunks": str(total_chunks)}
        if bucket:
            form["bucket"] = bucket
        await self._request(
            "POST",
            "multipart",
            key,
            chunk_index=index,
            data=form,
            files={"chunk": (f"chunk{index}", data, "application/octet-stream")},
        )

    async def combine(self, key, total_chunks, *, bucket=None, content_type=None):
        body: dict[str, Any] = {"path": key, "totalChunks": total_chunks}
        if bucket:
            body["bucket"] = bucket
        if content_type:
            body["contentType"] = content_type
        await self._request("PUT", "multipart", key, json=body)

    async def delete_chunks(self, key, count, *, bucket=None):
        params: dict[str, Any] = {"path": key, "totalChunks": count}
        if bucket:
            params["bucket"] = bucket
        data = await self._request("DELETE", "multipart", key, params=params)
        return int(data.get("cleaned", 0))
