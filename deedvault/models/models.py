"""
DeedVault Database Models
SQLAlchemy ORM models for documents, fingerprint history and verifications.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, BigInteger, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from deedvault.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class DocumentStatus(str, Enum):
    """Document lifecycle. Only ever advances forward."""
    PENDING = "pending"
    HASHED = "hashed"
    VERIFIED = "verified"
    REJECTED = "rejected"


# Statuses at or past hashing
HASHED_OR_LATER = frozenset({
    DocumentStatus.HASHED,
    DocumentStatus.VERIFIED,
    DocumentStatus.REJECTED,
})


class VerificationStatus(str, Enum):
    """Outcome of a verification decision."""
    VERIFIED = "verified"
    REJECTED = "rejected"


# =============================================================================
# Document
# =============================================================================

class Document(Base):
    """
    One physical file under verification.

    Created by the upload-acceptance step once the combined object exists
    in the store; advanced by hashing and verification, never deleted here.
    """
    __tablename__ = "documents"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)

    # Ownership
    property_id: Mapped[str] = mapped_column(String(36), index=True)
    doc_number: Mapped[str] = mapped_column(String(100), index=True)
    uploader_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    # File info
    storage_key: Mapped[str] = mapped_column(String(500))
    storage_bucket: Mapped[str] = mapped_column(String(100), default="documents")
    mime_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    original_filename: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default=DocumentStatus.PENDING.value, index=True)
    hash_computed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    hashes: Mapped[list["DocumentHash"]] = relationship(back_populates="document")
    verifications: Mapped[list["Verification"]] = relationship(back_populates="document")

    @property
    def document_status(self) -> DocumentStatus:
        return DocumentStatus(self.status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "property_id": self.property_id,
            "doc_number": self.doc_number,
            "uploader_id": self.uploader_id,
            "storage_key": self.storage_key,
            "storage_bucket": self.storage_bucket,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "original_filename": self.original_filename,
            "status": self.status,
            "hash_computed_at": self.hash_computed_at.isoformat() if self.hash_computed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# =============================================================================
# Fingerprint History
# =============================================================================

class DocumentHash(Base):
    """
    Append-only fingerprint history. Never mutated, never deleted.
    The latest row is the most recently created one.
    """
    __tablename__ = "document_hashes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    document_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id"), index=True)

    sha256_hash: Mapped[str] = mapped_column(String(64), index=True)
    algorithm: Mapped[str] = mapped_column(String(20), default="SHA-256")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    document: Mapped["Document"] = relationship(back_populates="hashes")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "sha256_hash": self.sha256_hash,
            "algorithm": self.algorithm,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# =============================================================================
# Verifications
# =============================================================================

class Verification(Base):
    """
    One verifier decision against a document. Immutable once created.
    """
    __tablename__ = "verifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    document_id: Mapped[str] = mapped_column(String(36), ForeignKey("documents.id"), index=True)
    verifier_id: Mapped[str] = mapped_column(String(36), index=True)

    status: Mapped[str] = mapped_column(String(20), index=True)  # verified, rejected
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # required when rejected
    discrepancy_metadata: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    document: Mapped["Document"] = relationship(back_populates="verifications")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "document_id": self.document_id,
            "verifier_id": self.verifier_id,
            "status": self.status,
            "reason": self.reason,
            "discrepancy_metadata": self.discrepancy_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
