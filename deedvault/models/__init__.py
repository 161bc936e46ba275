from deedvault.models.models import (
    Document,
    DocumentHash,
    DocumentStatus,
    HASHED_OR_LATER,
    Verification,
    VerificationStatus,
)

__all__ = [
    "Document",
    "DocumentHash",
    "DocumentStatus",
    "HASHED_OR_LATER",
    "Verification",
    "VerificationStatus",
]
