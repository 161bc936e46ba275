"""
Upload Router
Direct and chunked uploads into the object store.

Endpoints:
- POST   /api/uploads/direct     - single-shot upload, never overwrites
- POST   /api/uploads/multipart  - store one chunk
- PUT    /api/uploads/multipart  - combine chunks into the final object
- DELETE /api/uploads/multipart  - delete the chunks of a plan
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from pydantic import BaseModel, ConfigDict, Field

from deedvault.core.dependencies import get_actor_id, get_chunk_receiver
from deedvault.services.chunk_receiver import ChunkReceiver

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Schemas
# =============================================================================

class CombineRequest(BaseModel):
    """Body of a combine call."""
    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(..., min_length=1, description="Final object key")
    total_chunks: int = Field(..., alias="totalChunks", ge=1)
    bucket: Optional[str] = None
    content_type: Optional[str] = Field(None, alias="contentType")


class DirectUploadResponse(BaseModel):
    success: bool = True
    path: str
    bucket: str
    size: int


class ChunkResponse(BaseModel):
    success: bool = True
    key: str
    chunk_index: int
    total_chunks: int
    size: int


class CombineResponse(BaseModel):
    success: bool = True
    path: str
    bucket: str
    size: int
    total_chunks: int
    orphaned_chunks: list[str] = []


class CleanupResponse(BaseModel):
    success: bool = True
    path: str
    requested: int
    cleaned: int


# =============================================================================
# Routes
# =============================================================================

@router.post("/direct", response_model=DirectUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_direct(
    file: UploadFile = File(...),
    path: str = Form(...),
    bucket: Optional[str] = Form(None),
    receiver: ChunkReceiver = Depends(get_chunk_receiver),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    """Upload a small file in one request. 409 if the key already exists."""
    data = await file.read()
    stored = await receiver.put_direct(
        path,
        data,
        bucket=bucket,
        actor_id=actor_id,
        content_type=file.content_type,
    )
    return DirectUploadResponse(path=stored.key, bucket=stored.bucket, size=stored.size)


@router.post("/multipart", response_model=ChunkResponse)
async def upload_chunk(
    chunk: UploadFile = File(...),
    path: str = Form(...),
    chunkIndex: int = Form(...),
    totalChunks: int = Form(...),
    bucket: Optional[str] = Form(None),
    receiver: ChunkReceiver = Depends(get_chunk_receiver),
):
    """Store one chunk. Re-sending an index overwrites it."""
    data = await chunk.read()
    receipt = await receiver.receive_chunk(path, chunkIndex, totalChunks, data, bucket=bucket)
    return ChunkResponse(
        key=receipt.key,
        chunk_index=receipt.chunk_index,
        total_chunks=receipt.total_chunks,
        size=receipt.size,
    )


@router.put("/multipart", response_model=CombineResponse)
async def combine_chunks(
    body: CombineRequest,
    receiver: ChunkReceiver = Depends(get_chunk_receiver),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    """Reassemble all chunks in index order. 409 if already combined."""
    result = await receiver.combine(
        body.path,
        body.total_chunks,
        bucket=body.bucket,
        actor_id=actor_id,
        content_type=body.content_type,
    )
    return CombineResponse(
        path=result.key,
        bucket=result.bucket,
        size=result.size,
        total_chunks=result.total_chunks,
        orphaned_chunks=result.orphaned_keys,
    )


@router.delete("/multipart", response_model=CleanupResponse)
async def cleanup_chunks(
    path: str = Query(...),
    totalChunks: int = Query(...),
    bucket: Optional[str] = Query(None),
    receiver: ChunkReceiver = Depends(get_chunk_receiver),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    """Delete every chunk of a plan; reports how many were actually removed."""
    result = await receiver.cleanup(path, totalChunks, bucket=bucket, actor_id=actor_id)
    return CleanupResponse(path=result.key, requested=result.requested, cleaned=result.removed)
