"""
Documents Router
Document registration, fingerprinting and history.

Endpoints:
- POST /api/documents                       - register a stored object as a document
- GET  /api/documents/{id}                  - document details
- POST /api/documents/{id}/hash             - compute and record the fingerprint
- GET  /api/documents/{id}/hashes           - fingerprint history
- GET  /api/documents/{id}/verifications    - verification history
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from deedvault.core.config import Settings, get_settings
from deedvault.core.dependencies import (
    get_actor_id,
    get_hash_engine,
    get_record_store,
    get_store,
    get_verification_engine,
)
from deedvault.core.errors import NotFoundError
from deedvault.services.hash_engine import HashEngine
from deedvault.services.records import RecordStore
from deedvault.services.storage import ObjectStore
from deedvault.services.verification_engine import VerificationEngine

logger = logging.getLogger(__name__)

router = APIRouter()


class DocumentCreate(BaseModel):
    """Registers an object already committed to the store."""
    property_id: str = Field(..., min_length=1)
    doc_number: str = Field(..., min_length=1)
    storage_key: str = Field(..., min_length=1)
    storage_bucket: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)
    original_filename: Optional[str] = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_document(
    body: DocumentCreate,
    records: RecordStore = Depends(get_record_store),
    store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    """Create a pending document for an object that exists in the store."""
    bucket = body.storage_bucket or settings.default_bucket
    if not await store.exists(body.storage_key, bucket=bucket):
        raise NotFoundError("Object", body.storage_key)

    document = await records.create_document(
        property_id=body.property_id,
        doc_number=body.doc_number,
        storage_key=body.storage_key,
        storage_bucket=bucket,
        mime_type=body.mime_type,
        file_size=body.file_size,
        original_filename=body.original_filename,
        uploader_id=actor_id,
    )
    logger.info("Registered document %s for %s", document.id, body.storage_key, extra={"document_id": document.id})
    return document.to_dict()


@router.get("/{document_id}")
async def get_document(document_id: str, records: RecordStore = Depends(get_record_store)):
    document = await records.load_document(document_id)
    if document is None:
        raise NotFoundError("Document", document_id)
    return document.to_dict()


@router.post("/{document_id}/hash")
async def hash_document(
    document_id: str,
    engine: HashEngine = Depends(get_hash_engine),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    """Fingerprint the document. A no-op if it is already hashed."""
    result = await engine.compute_and_record(document_id, actor_id=actor_id)
    return result.to_dict()


@router.get("/{document_id}/hashes")
async def get_hash_history(document_id: str, engine: HashEngine = Depends(get_hash_engine)):
    history = await engine.hash_history(document_id)
    return history.to_dict()


@router.get("/{document_id}/verifications")
async def get_verification_history(
    document_id: str,
    engine: VerificationEngine = Depends(get_verification_engine),
):
    verifications = await engine.verification_history(document_id)
    return {
        "document_id": document_id,
        "verifications": [v.to_dict() for v in verifications],
        "total": len(verifications),
    }
