"""
Chunk Planner - client side of the chunked transfer protocol.

Decides between a single direct upload and a chunked upload, sends
chunks strictly in order, and publishes progress snapshots. Cancellation
is cooperative: the token is checked before each chunk is sent.
"""

import io
import logging
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import BinaryIO, Callable, Optional, Union

from deedvault.core.config import Settings, get_settings
from deedvault.core.errors import DeedVaultError, PreconditionError, ValidationError
from deedvault.services.chunk_transport import ChunkTransport
from deedvault.services.storage.base import validate_key

logger = logging.getLogger(__name__)

UploadSource = Union[bytes, bytearray, memoryview, BinaryIO]
ProgressCallback = Callable[["UploadProgress"], None]


class UploadState(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    SUCCESS = "success"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({UploadState.SUCCESS, UploadState.ERROR, UploadState.CANCELLED})


class CancellationToken:
    """Cooperative cancellation flag with listeners."""

    def __init__(self):
        self._cancelled = False
        self._listeners: list[Callable[[], None]] = []

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as e:
                logger.warning("Cancellation listener failed: %s", e)

    def is_cancelled(self) -> bool:
        return self._cancelled

    def on_cancel(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Register a listener. Returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe


@dataclass(frozen=True)
class ChunkRange:
    """Byte range [start, end) of one chunk."""
    index: int
    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class UploadProgress:
    state: UploadState = UploadState.IDLE
    progress: int = 0  # 0-100
    bytes_uploaded: int = 0
    total_bytes: int = 0
    current_chunk_index: int = 0
    total_chunks: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        return data


def calculate_chunks(file_size: int, chunk_size: int) -> int:
    """Number of chunks needed for file_size bytes."""
    if chunk_size <= 0:
        raise ValidationError("chunk_size must be positive")
    if file_size < 0:
        raise ValidationError("file_size cannot be negative")
    return -(-file_size // chunk_size)


def plan_chunks(file_size: int, chunk_size: int) -> list[ChunkRange]:
    """Ordered, contiguous ranges covering the file. The last may be short."""
    return [
        ChunkRange(index=i, start=i * chunk_size, end=min((i + 1) * chunk_size, file_size))
        for i in range(calculate_chunks(file_size, chunk_size))
    ]


def source_size(source: UploadSource) -> int:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return len(source)
    if not source.seekable():
        raise ValidationError("Upload source must be seekable")
    current = source.tell()
    size = source.seek(0, io.SEEK_END)
    source.seek(current)
    return size


def read_range(source: UploadSource, chunk: ChunkRange) -> bytes:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return bytes(source[chunk.start:chunk.end])
    source.seek(chunk.start)
    data = source.read(chunk.size)
    if len(data) != chunk.size:
        raise ValidationError(f"Short read for chunk {chunk.index}: expected {chunk.size}, got {len(data)}")
    return data


def percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return round(done * 100 / total)


class ChunkPlanner:
    """
    Drives one upload session at a time.

    The planner keeps the latest progress snapshot in `progress`; once a
    terminal state is reached it stays there until `reset()`.
    """

    def __init__(self, transport: ChunkTransport, settings: Optional[Settings] = None):
        self.transport = transport
        self.settings = settings or get_settings()
        self.progress = UploadProgress()
        self.last_error: Optional[Exception] = None
        self._on_progress: Optional[ProgressCallback] = None

    def reset(self) -> None:
        self.progress = UploadProgress()
        self.last_error = None
        self._on_progress = None

    def _update(self, **changes) -> UploadProgress:
        self.progress = replace(self.progress, **changes)
        if self._on_progress:
            try:
                self._on_progress(self.progress)
            except Exception as e:
                logger.warning("Progress callback failed: %s", e)
        return self.progress

    def _fail(self, error: Exception, **changes) -> UploadProgress:
        self.last_error = error
        message = error.message if isinstance(error, DeedVaultError) else str(error)
        return self._update(state=UploadState.ERROR, error=message, **changes)

    async def upload(
        self,
        source: UploadSource,
        destination_key: str,
        bucket: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        content_type: Optional[str] = None,
    ) -> UploadProgress:
        """
        Upload source to destination_key and return the terminal snapshot.

        Read and transport failures end in state `error` (see `last_error`)
        rather than raising, so the planner is always left terminal.
        Raises PreconditionError if a session already ran on this planner
        without reset().
        """
        if self.progress.state != UploadState.IDLE:
            raise PreconditionError(f"Upload planner is '{self.progress.state.value}'; call reset() first")
        validate_key(destination_key)
        total_bytes = source_size(source)
        self._on_progress = on_progress

        if total_bytes < self.settings.multipart_threshold:
            return await self._upload_direct(source, destination_key, bucket, token, total_bytes, content_type)
        return await self._upload_chunked(source, destination_key, bucket, token, total_bytes, content_type)

    async def _upload_direct(self, source, key, bucket, token, total_bytes, content_type) -> UploadProgress:
        self._update(state=UploadState.UPLOADING, total_bytes=total_bytes, total_chunks=1)
        if token and token.is_cancelled():
            return self._update(state=UploadState.CANCELLED)

        try:
            data = read_range(source, ChunkRange(0, 0, total_bytes))
            await self.transport.put_direct(key, data, bucket=bucket, content_type=content_type)
        except Exception as e:
            logger.error("Direct upload of %s failed: %s", key, e, extra={"key": key})
            return self._fail(e)

        return self._update(
            state=UploadState.SUCCESS,
            progress=100,
            bytes_uploaded=total_bytes,
            current_chunk_index=1,
        )

    async def _upload_chunked(self, source, key, bucket, token, total_bytes, content_type) -> UploadProgress:
        ranges = plan_chunks(total_bytes, self.settings.chunk_size)
        total_chunks = len(ranges)
        bytes_uploaded = 0
        self._update(state=UploadState.UPLOADING, total_bytes=total_bytes, total_chunks=total_chunks)

        for chunk in ranges:
            if token and token.is_cancelled():
                await self._discard_sent(key, chunk.index, bucket)
                return self._update(state=UploadState.CANCELLED)

            self._update(current_chunk_index=chunk.index)
            try:
                data = read_range(source, chunk)
                await self.transport.send_chunk(key, chunk.index, total_chunks, data, bucket=bucket)
            except Exception as e:
                # Chunks already stored stay in place for an explicit cleanup
                logger.error(
                    "Chunk %d/%d of %s failed: %s",
                    chunk.index + 1,
                    total_chunks,
                    key,
                    e,
                    extra={"key": key, "chunk_index": chunk.index},
                )
                return self._fail(e)

            bytes_uploaded += chunk.size
            self._update(bytes_uploaded=bytes_uploaded, progress=percent(bytes_uploaded, total_bytes))

        try:
            await self.transport.combine(key, total_chunks, bucket=bucket, content_type=content_type)
        except Exception as e:
            logger.error("Combine of %s failed: %s", key, e, extra={"key": key})
            return self._fail(e, current_chunk_index=total_chunks)

        return self._update(state=UploadState.SUCCESS, progress=100, current_chunk_index=total_chunks)

    async def _discard_sent(self, key: str, sent: int, bucket: Optional[str]) -> None:
        """Best-effort delete of chunks 0..sent-1 after cancellation."""
        if sent == 0:
            return
        try:
            removed = await self.transport.delete_chunks(key, sent, bucket=bucket)
        except DeedVaultError as e:
            logger.warning(
                "Could not remove %d chunk(s) of cancelled upload %s: %s",
                sent,
                key,
                e.message,
                extra={"key": key},
            )
            return
        if removed < sent:
            logger.warning(
                "Cancelled upload %s left %d orphaned chunk(s)",
                key,
                sent - removed,
                extra={"key": key},
            )
