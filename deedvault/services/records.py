"""
Record Store - relational operations for documents, fingerprints and verifications.

Thin repository over an AsyncSession. Every write commits its own unit
of work; SQLAlchemy failures are rolled back and surfaced as StorageError.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from deedvault.core.errors import StorageError
from deedvault.models.models import (
    Document,
    DocumentHash,
    DocumentStatus,
    Verification,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


class RecordStore:
    """Repository for Document, DocumentHash and Verification rows."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def commit(self, action: str, document_id: Optional[str] = None) -> None:
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Database write failed during %s: %s",
                action,
                e,
                extra={"document_id": document_id},
            )
            raise StorageError(f"Database write failed during {action}", document_id=document_id)

    # =========================================================================
    # Documents
    # =========================================================================

    async def create_document(
        self,
        property_id: str,
        doc_number: str,
        storage_key: str,
        storage_bucket: str = "documents",
        mime_type: Optional[str] = None,
        file_size: Optional[int] = None,
        original_filename: Optional[str] = None,
        uploader_id: Optional[str] = None,
        status: DocumentStatus = DocumentStatus.PENDING,
    ) -> Document:
        document = Document(
            id=new_id(),
            property_id=property_id,
            doc_number=doc_number,
            storage_key=storage_key,
            storage_bucket=storage_bucket,
            mime_type=mime_type,
            file_size=file_size,
            original_filename=original_filename,
            uploader_id=uploader_id,
            status=status.value,
        )
        self.db.add(document)
        await self.commit("create_document")
        return document

    async def load_document(self, document_id: str) -> Optional[Document]:
        try:
            return await self.db.get(Document, document_id, populate_existing=True)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load document: {e}", document_id=document_id)

    async def update_document_status(
        self,
        document: Document,
        status: DocumentStatus,
        hash_computed_at: Optional[datetime] = None,
    ) -> Document:
        document.status = status.value
        document.updated_at = utcnow()
        if hash_computed_at is not None:
            document.hash_computed_at = hash_computed_at
        await self.commit("update_document_status", document.id)
        return document

    async def advance_document_status(
        self,
        document_id: str,
        expected: DocumentStatus,
        new_status: DocumentStatus,
    ) -> bool:
        """
        Move a document from `expected` to `new_status` inside the current
        transaction, without committing.

        The WHERE clause carries the expected status, so of two concurrent
        callers only the first to write sees a changed row. Returns False
        when the document was no longer in `expected`.
        """
        stmt = (
            update(Document)
            .where(Document.id == document_id, Document.status == expected.value)
            .values(status=new_status.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Status transition %s -> %s failed: %s",
                expected.value,
                new_status.value,
                e,
                extra={"document_id": document_id},
            )
            raise StorageError("Database write failed during advance_document_status", document_id=document_id)
        return result.rowcount == 1

    # =========================================================================
    # Fingerprints
    # =========================================================================

    def stage_document_hash(self, document_id: str, sha256_hash: str, algorithm: str = "SHA-256") -> DocumentHash:
        """Add a fingerprint row to the session without committing."""
        row = DocumentHash(
            id=new_id(),
            document_id=document_id,
            sha256_hash=sha256_hash,
            algorithm=algorithm,
            created_at=utcnow(),
        )
        self.db.add(row)
        return row

    async def insert_document_hash(self, document_id: str, sha256_hash: str, algorithm: str = "SHA-256") -> DocumentHash:
        row = self.stage_document_hash(document_id, sha256_hash, algorithm)
        await self.commit("insert_document_hash", document_id)
        return row

    async def load_latest_document_hash(self, document_id: str) -> Optional[DocumentHash]:
        stmt = (
            select(DocumentHash)
            .where(DocumentHash.document_id == document_id)
            .order_by(DocumentHash.created_at.desc())
            .limit(1)
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load fingerprint: {e}", document_id=document_id)
        return result.scalar_one_or_none()

    async def list_document_hashes(self, document_id: str) -> list[DocumentHash]:
        """Fingerprint history, oldest first."""
        stmt = (
            select(DocumentHash)
            .where(DocumentHash.document_id == document_id)
            .order_by(DocumentHash.created_at.asc())
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list fingerprints: {e}", document_id=document_id)
        return list(result.scalars().all())

    # =========================================================================
    # Verifications
    # =========================================================================

    def stage_verification(
        self,
        document_id: str,
        verifier_id: str,
        status: str,
        reason: Optional[str] = None,
        discrepancy_metadata: Optional[dict[str, Any]] = None,
    ) -> Verification:
        """Add a verification row to the session without committing."""
        row = Verification(
            id=new_id(),
            document_id=document_id,
            verifier_id=verifier_id,
            status=status,
            reason=reason,
            discrepancy_metadata=discrepancy_metadata,
            created_at=utcnow(),
        )
        self.db.add(row)
        return row

    async def insert_verification(
        self,
        document_id: str,
        verifier_id: str,
        status: str,
        reason: Optional[str] = None,
        discrepancy_metadata: Optional[dict[str, Any]] = None,
    ) -> Verification:
        row = self.stage_verification(document_id, verifier_id, status, reason, discrepancy_metadata)
        await self.commit("insert_verification", document_id)
        return row

    async def list_verifications(self, document_id: str) -> list[Verification]:
        """Verification decisions, newest first."""
        stmt = (
            select(Verification)
            .where(Verification.document_id == document_id)
            .order_by(Verification.created_at.desc())
        )
        try:
            result = await self.db.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list verifications: {e}", document_id=document_id)
        return list(result.scalars().all())
