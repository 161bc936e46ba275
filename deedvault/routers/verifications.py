"""
Verifications Router
Manual and file-based verification of hashed documents.

Endpoints:
- POST /api/verifications                   - record a manual decision
- POST /api/verifications/verify-with-file  - compare a submitted file
- POST /api/verifications/batch             - compare several files, one per document
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from pydantic import BaseModel, ConfigDict, Field

from deedvault.core.dependencies import get_actor_id, get_verification_engine
from deedvault.core.errors import ValidationError
from deedvault.models.models import VerificationStatus
from deedvault.services.verification_engine import CandidateFile, VerificationEngine

logger = logging.getLogger(__name__)

router = APIRouter()


class ManualVerificationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    document_id: str = Field(..., alias="documentId", min_length=1)
    status: VerificationStatus
    reason: Optional[str] = None


def check_declared_size(upload: UploadFile, limit: int) -> None:
    """Reject on the size the multipart parser reports, before reading the body."""
    if upload.size is not None and upload.size > limit:
        raise ValidationError(
            f"File size {upload.size} bytes exceeds maximum of {limit} bytes",
            details=[{"loc": ["file"], "msg": "file too large", "type": "value_error.size"}],
        )


async def to_candidate(upload: UploadFile, limit: int) -> CandidateFile:
    # One byte past the limit is enough for the engine to reject it
    return CandidateFile(
        data=await upload.read(limit + 1),
        content_type=upload.content_type or "",
        filename=upload.filename,
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def verify_manually(
    body: ManualVerificationRequest,
    engine: VerificationEngine = Depends(get_verification_engine),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    outcome = await engine.verify_manually(body.document_id, body.status, actor_id, reason=body.reason)
    return outcome.to_dict()


@router.post("/verify-with-file", status_code=status.HTTP_201_CREATED)
async def verify_with_file(
    documentId: str = Form(...),
    file: UploadFile = File(...),
    engine: VerificationEngine = Depends(get_verification_engine),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    """A mismatch is still a 201: the verification is recorded as rejected."""
    limit = engine.settings.max_verification_file_size
    check_declared_size(file, limit)
    outcome = await engine.verify_with_file(documentId, await to_candidate(file, limit), actor_id)
    return outcome.to_dict()


@router.post("/batch")
async def verify_batch(
    documentIds: list[str] = Form(...),
    files: list[UploadFile] = File(...),
    engine: VerificationEngine = Depends(get_verification_engine),
    actor_id: Optional[str] = Depends(get_actor_id),
):
    """Pairs documentIds[i] with files[i]; each pair succeeds or fails on its own."""
    if len(documentIds) != len(files):
        raise ValidationError(
            f"Got {len(documentIds)} document ids but {len(files)} files"
        )
    settings = engine.settings
    if len(files) > settings.max_batch_size:
        raise ValidationError(f"Batch size {len(files)} exceeds maximum of {settings.max_batch_size}")
    declared_total = sum(upload.size or 0 for upload in files)
    if declared_total > settings.max_batch_total_size:
        raise ValidationError(
            f"Batch total size {declared_total} bytes exceeds maximum of "
            f"{settings.max_batch_total_size} bytes"
        )
    limit = settings.max_verification_file_size
    items = [(document_id, await to_candidate(upload, limit)) for document_id, upload in zip(documentIds, files)]
    result = await engine.verify_batch(items, actor_id)
    return result.to_dict()
