"""
Verification Engine

Decides whether a freshly submitted file is byte-identical to the document
on record, by re-computing its SHA-256 fingerprint and comparing it to the
latest recorded one in constant time. Only documents in `hashed` status
accept a verification; the decision moves them to `verified` or `rejected`.

A fingerprint mismatch is a successful call with outcome `rejected`, not
an error.
"""

import hmac
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Optional, TypeVar

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from deedvault.core.audit import AuditAction, AuditLogger, get_audit_logger
from deedvault.core.config import Settings, get_settings
from deedvault.core.errors import (
    ConsistencyError,
    DeedVaultError,
    NotFoundError,
    PreconditionError,
    StorageError,
    ValidationError,
)
from deedvault.models.models import (
    Document,
    DocumentHash,
    DocumentStatus,
    Verification,
    VerificationStatus,
    utcnow,
)
from deedvault.services.hash_engine import HASH_ALGORITHM, sha256_hex
from deedvault.services.records import RecordStore

logger = logging.getLogger(__name__)

HASH_MISMATCH_REASON = "Hash mismatch detected"


# =============================================================================
# Constant-time comparison
# =============================================================================

def constant_time_compare(a: str, b: str) -> bool:
    """Case-insensitive digest comparison that does not exit early on a mismatch."""
    return hmac.compare_digest(a.lower().encode("utf-8"), b.lower().encode("utf-8"))


# =============================================================================
# Candidate files
# =============================================================================

@dataclass
class CandidateFile:
    """A file submitted for comparison against the document on record."""
    data: bytes
    content_type: str
    filename: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def mime_type(self) -> str:
        return (self.content_type or "").split(";", 1)[0].strip().lower()


def validate_candidate(candidate: CandidateFile, settings: Settings) -> None:
    """Size and MIME checks. Runs before any storage or hashing work."""
    if candidate.size == 0:
        raise ValidationError("Verification file is empty")
    if candidate.size > settings.max_verification_file_size:
        raise ValidationError(
            f"File size {candidate.size} bytes exceeds maximum of "
            f"{settings.max_verification_file_size} bytes",
            details=[{"loc": ["file"], "msg": "file too large", "type": "value_error.size"}],
        )
    if not candidate.mime_type:
        raise ValidationError("MIME type is required")
    if candidate.mime_type not in settings.allowed_mime_types_set:
        raise ValidationError(
            f"MIME type '{candidate.mime_type}' is not allowed. "
            f"Allowed types: {', '.join(settings.allowed_mime_types)}",
            details=[{"loc": ["file"], "msg": "mime type not allowed", "type": "value_error.mime"}],
        )


# =============================================================================
# Discrepancy metadata
# =============================================================================

class DiscrepancyRecord(BaseModel):
    """Base for structured evidence attached to a rejected verification."""
    model_config = ConfigDict(extra="ignore")

    kind: str


class OtherDiscrepancies(BaseModel):
    mime_type_match: Optional[bool] = None
    original_mime_type: Optional[str] = None
    verification_mime_type: Optional[str] = None
    algorithm_match: bool = True
    stored_hash_algorithm: str = HASH_ALGORITHM
    computed_hash_algorithm: str = HASH_ALGORITHM
    time_since_hash_computation_ms: Optional[int] = None
    verification_file_name: Optional[str] = None


class HashMismatchDiscrepancy(DiscrepancyRecord):
    kind: Literal["hash_mismatch"] = "hash_mismatch"
    hash_mismatch: bool = True
    file_size_difference: Optional[int] = None  # candidate minus recorded
    original_file_size: Optional[int] = None
    verification_file_size: int
    stored_hash: str
    computed_hash: str
    algorithm: str = HASH_ALGORITHM
    other_discrepancies: OtherDiscrepancies = OtherDiscrepancies()


_D = TypeVar("_D", bound=type[DiscrepancyRecord])

_DISCREPANCY_KINDS: dict[str, type[DiscrepancyRecord]] = {}


def register_discrepancy(model: _D) -> _D:
    """Register a discrepancy model under the default of its `kind` field."""
    kind = model.model_fields["kind"].default
    if not isinstance(kind, str) or not kind:
        raise ValueError(f"{model.__name__} must declare a default 'kind'")
    _DISCREPANCY_KINDS[kind] = model
    return model


register_discrepancy(HashMismatchDiscrepancy)


def discrepancy_kinds() -> list[str]:
    return sorted(_DISCREPANCY_KINDS)


def parse_discrepancy(data: Optional[dict[str, Any]]) -> Optional[DiscrepancyRecord]:
    """Rebuild a typed discrepancy from stored metadata."""
    if data is None:
        return None
    model = _DISCREPANCY_KINDS.get(data.get("kind", ""))
    if model is None:
        raise ValidationError(f"Unknown discrepancy kind: {data.get('kind')!r}")
    return model.model_validate(data)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def collect_hash_mismatch(
    document: Document,
    stored: DocumentHash,
    candidate: CandidateFile,
    computed_hash: str,
) -> HashMismatchDiscrepancy:
    hash_computed_at = _as_utc(document.hash_computed_at)
    since_ms = None
    if hash_computed_at is not None:
        since_ms = int((utcnow() - hash_computed_at).total_seconds() * 1000)

    original_mime = (document.mime_type or "").lower() or None
    return HashMismatchDiscrepancy(
        file_size_difference=(
            candidate.size - document.file_size if document.file_size is not None else None
        ),
        original_file_size=document.file_size,
        verification_file_size=candidate.size,
        stored_hash=stored.sha256_hash,
        computed_hash=computed_hash,
        algorithm=HASH_ALGORITHM,
        other_discrepancies=OtherDiscrepancies(
            mime_type_match=(original_mime == candidate.mime_type) if original_mime else None,
            original_mime_type=original_mime,
            verification_mime_type=candidate.mime_type,
            algorithm_match=stored.algorithm == HASH_ALGORITHM,
            stored_hash_algorithm=stored.algorithm,
            computed_hash_algorithm=HASH_ALGORITHM,
            time_since_hash_computation_ms=since_ms,
            verification_file_name=candidate.filename,
        ),
    )


# =============================================================================
# Results
# =============================================================================

@dataclass
class VerificationOutcome:
    """Result of one verification decision."""
    document_id: str
    status: VerificationStatus
    verification: dict[str, Any]  # snapshot of the persisted row
    reason: Optional[str] = None
    discrepancy: Optional[DiscrepancyRecord] = None
    computed_hash: Optional[str] = None
    stored_hash: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def verification_id(self) -> str:
        return self.verification["id"]

    @property
    def hash_match(self) -> Optional[bool]:
        if self.computed_hash is None:
            return None
        return self.status == VerificationStatus.VERIFIED

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "verification": self.verification,
            "status": self.status.value,
            "reason": self.reason,
            "discrepancy_metadata": self.discrepancy.model_dump(mode="json") if self.discrepancy else None,
            "hash_match": self.hash_match,
            "computed_hash": self.computed_hash,
            "stored_hash": self.stored_hash,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class BatchItemResult:
    document_id: str
    outcome: Optional[VerificationOutcome] = None
    error: Optional[DeedVaultError] = None

    @property
    def success(self) -> bool:
        return self.outcome is not None

    def to_dict(self) -> dict[str, Any]:
        if self.outcome is not None:
            return {"document_id": self.document_id, "success": True, **self.outcome.to_dict()}
        return {
            "document_id": self.document_id,
            "success": False,
            "error": self.error.error_code if self.error else "error",
            "message": self.error.message if self.error else None,
        }


@dataclass
class BatchVerificationResult:
    items: list[BatchItemResult] = field(default_factory=list)
    processing_time_ms: float = 0.0

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def verified(self) -> int:
        return sum(1 for i in self.items if i.outcome and i.outcome.status == VerificationStatus.VERIFIED)

    @property
    def rejected(self) -> int:
        return sum(1 for i in self.items if i.outcome and i.outcome.status == VerificationStatus.REJECTED)

    @property
    def failed(self) -> int:
        return sum(1 for i in self.items if not i.success)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [i.to_dict() for i in self.items],
            "summary": {
                "total": self.total,
                "verified": self.verified,
                "rejected": self.rejected,
                "failed": self.failed,
                "processing_time_ms": round(self.processing_time_ms, 2),
            },
        }


# =============================================================================
# Engine
# =============================================================================

class VerificationEngine:
    """Verification decisions against hashed documents."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Optional[Settings] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.records = RecordStore(db)
        self.settings = settings or get_settings()
        self.audit = audit or get_audit_logger()
        self._clock = clock

    @staticmethod
    def _require_verifier(verifier_id: Optional[str]) -> str:
        if not verifier_id or not verifier_id.strip():
            raise ValidationError("Verifier id is required")
        return verifier_id

    async def _load_hashed_document(self, document_id: str) -> Document:
        document = await self.records.load_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        if document.document_status != DocumentStatus.HASHED:
            raise PreconditionError(
                f"Document must be in 'hashed' status to verify (current: '{document.status}')",
                document_id=document_id,
                current_status=document.status,
            )
        return document

    async def _record_decision(
        self,
        document_id: str,
        verifier_id: str,
        status: VerificationStatus,
        reason: Optional[str],
        discrepancy: Optional[DiscrepancyRecord],
    ) -> dict[str, Any]:
        """
        Advance the document out of 'hashed' and persist the Verification
        in one transaction.

        The transition is conditional on the status still being 'hashed';
        a caller that loses a race gets PreconditionError and nothing is
        written.
        """
        new_status = DocumentStatus.VERIFIED if status == VerificationStatus.VERIFIED else DocumentStatus.REJECTED
        claimed = await self.records.advance_document_status(document_id, DocumentStatus.HASHED, new_status)
        if not claimed:
            await self.records.db.rollback()
            current = await self.records.load_document(document_id)
            current_status = current.status if current is not None else None
            logger.warning(
                "Document %s left 'hashed' before the decision was recorded (now '%s')",
                document_id,
                current_status,
                extra={"document_id": document_id},
            )
            raise PreconditionError(
                f"Document must be in 'hashed' status to verify (current: '{current_status}')",
                document_id=document_id,
                current_status=current_status,
            )

        row: Verification = self.records.stage_verification(
            document_id=document_id,
            verifier_id=verifier_id,
            status=status.value,
            reason=reason,
            discrepancy_metadata=discrepancy.model_dump(mode="json") if discrepancy else None,
        )
        await self.records.commit("record_verification", document_id)
        return row.to_dict()

    async def verify_with_file(
        self,
        document_id: str,
        candidate: CandidateFile,
        verifier_id: str,
    ) -> VerificationOutcome:
        """
        Compare a candidate file against the document's latest fingerprint.

        Raises:
            ValidationError: candidate too large, empty or of a disallowed type
            NotFoundError: unknown document
            PreconditionError: document is not in 'hashed' status
            ConsistencyError: document is 'hashed' but has no fingerprint
        """
        self._require_verifier(verifier_id)
        validate_candidate(candidate, self.settings)
        started = self._clock()

        document = await self._load_hashed_document(document_id)
        computed_hash = sha256_hex(candidate.data)

        stored = await self.records.load_latest_document_hash(document_id)
        if stored is None:
            raise ConsistencyError(
                "Document is in 'hashed' status but has no recorded fingerprint",
                document_id=document_id,
            )

        if constant_time_compare(computed_hash, stored.sha256_hash):
            status = VerificationStatus.VERIFIED
            reason = None
            discrepancy = None
        else:
            status = VerificationStatus.REJECTED
            reason = HASH_MISMATCH_REASON
            discrepancy = collect_hash_mismatch(document, stored, candidate, computed_hash)

        stored_hash = stored.sha256_hash
        snapshot = await self._record_decision(document_id, verifier_id, status, reason, discrepancy)
        duration_ms = (self._clock() - started) * 1000

        logger.info(
            "Document %s %s by %s (hash match: %s)",
            document_id,
            status.value,
            verifier_id,
            status == VerificationStatus.VERIFIED,
            extra={"document_id": document_id, "duration_ms": round(duration_ms, 2)},
        )
        await self.audit.record(
            action=AuditAction.DOCUMENT_VERIFY,
            actor_id=verifier_id,
            resource_type="document",
            resource_id=document_id,
            details={
                "method": "file",
                "verification_id": snapshot["id"],
                "status": status.value,
                "hash_match": status == VerificationStatus.VERIFIED,
                "computed_hash": computed_hash,
                "stored_hash": stored_hash,
                "file_size": candidate.size,
                "duration_ms": round(duration_ms, 2),
            },
        )

        return VerificationOutcome(
            document_id=document_id,
            status=status,
            verification=snapshot,
            reason=reason,
            discrepancy=discrepancy,
            computed_hash=computed_hash,
            stored_hash=stored_hash,
            duration_ms=duration_ms,
        )

    async def verify_manually(
        self,
        document_id: str,
        decision: VerificationStatus | str,
        verifier_id: str,
        reason: Optional[str] = None,
    ) -> VerificationOutcome:
        """Record a human decision. A reason is mandatory when rejecting."""
        self._require_verifier(verifier_id)
        try:
            status = VerificationStatus(decision)
        except ValueError:
            raise ValidationError(f"Decision must be 'verified' or 'rejected', got {decision!r}")
        reason = reason.strip() if reason else None
        if status == VerificationStatus.REJECTED and not reason:
            raise ValidationError(
                "A reason is required when rejecting a document",
                details=[{"loc": ["reason"], "msg": "required when rejecting", "type": "value_error.missing"}],
            )
        started = self._clock()

        await self._load_hashed_document(document_id)
        snapshot = await self._record_decision(document_id, verifier_id, status, reason, None)
        duration_ms = (self._clock() - started) * 1000

        logger.info(
            "Document %s manually %s by %s",
            document_id,
            status.value,
            verifier_id,
            extra={"document_id": document_id},
        )
        await self.audit.record(
            action=AuditAction.DOCUMENT_VERIFY,
            actor_id=verifier_id,
            resource_type="document",
            resource_id=document_id,
            details={
                "method": "manual",
                "verification_id": snapshot["id"],
                "status": status.value,
                "duration_ms": round(duration_ms, 2),
            },
        )

        return VerificationOutcome(
            document_id=document_id,
            status=status,
            verification=snapshot,
            reason=reason,
            duration_ms=duration_ms,
        )

    async def verify_batch(
        self,
        items: list[tuple[str, CandidateFile]],
        verifier_id: str,
    ) -> BatchVerificationResult:
        """
        Apply verify_with_file to each (document id, file) pair in order.

        Limits are checked up front; after that one pair's failure is
        reported in its own result and does not stop the rest.
        """
        self._require_verifier(verifier_id)
        if not items:
            raise ValidationError("Batch must contain at least one document")
        if len(items) > self.settings.max_batch_size:
            raise ValidationError(
                f"Batch size {len(items)} exceeds maximum of {self.settings.max_batch_size}"
            )
        total_size = sum(candidate.size for _, candidate in items)
        if total_size > self.settings.max_batch_total_size:
            raise ValidationError(
                f"Batch total size {total_size} bytes exceeds maximum of "
                f"{self.settings.max_batch_total_size} bytes"
            )

        started = self._clock()
        result = BatchVerificationResult()
        for document_id, candidate in items:
            try:
                outcome = await self.verify_with_file(document_id, candidate, verifier_id)
                result.items.append(BatchItemResult(document_id, outcome=outcome))
            except DeedVaultError as e:
                logger.warning(
                    "Batch verification of %s failed: %s",
                    document_id,
                    e.message,
                    extra={"document_id": document_id, "error_code": e.error_code},
                )
                result.items.append(BatchItemResult(document_id, error=e))
        result.processing_time_ms = (self._clock() - started) * 1000

        logger.info(
            "Batch verification: %d total, %d verified, %d rejected, %d failed",
            result.total,
            result.verified,
            result.rejected,
            result.failed,
        )
        return result

    async def verification_history(self, document_id: str) -> list[Verification]:
        """All verifications for a document, newest first."""
        document = await self.records.load_document(document_id)
        if document is None:
            raise NotFoundError("Document", document_id)
        return await self.records.list_verifications(document_id)
