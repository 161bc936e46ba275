"""
Standardized Error Handling for DeedVault.

Typed failures raised by the integrity core, and the FastAPI handlers
that render them as a consistent JSON envelope.
"""

import logging
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class DeedVaultError(Exception):
    """Base exception for DeedVault errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "deedvault_error",
        status_code: int = 500,
        details: list[dict] | dict | None = None,
    ):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(DeedVaultError):
    """Malformed input, rejected before any storage I/O."""

    def __init__(self, message: str, details: list[dict] | None = None):
        super().__init__(
            message=message,
            error_code="validation_error",
            status_code=422,
            details=details,
        )


class PreconditionError(DeedVaultError):
    """Operation attempted against a document in the wrong lifecycle state."""

    def __init__(
        self,
        message: str,
        document_id: str | None = None,
        current_status: str | None = None,
    ):
        self.document_id = document_id
        self.current_status = current_status
        super().__init__(
            message=message,
            error_code="precondition_failed",
            status_code=409,
            details={"document_id": document_id, "status": current_status},
        )


class NotFoundError(DeedVaultError):
    """Resource not found."""

    def __init__(self, resource: str, identifier: Any = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} '{identifier}' not found"
        super().__init__(
            message=message,
            error_code="not_found",
            status_code=404,
        )


class StorageError(DeedVaultError):
    """Object-store or relational-store I/O failure."""

    def __init__(
        self,
        message: str = "Storage operation failed",
        key: str | None = None,
        chunk_index: int | None = None,
        document_id: str | None = None,
        error_code: str = "storage_error",
        status_code: int = 502,
    ):
        self.key = key
        self.chunk_index = chunk_index
        self.document_id = document_id
        context = {
            name: value
            for name, value in (
                ("key", key),
                ("chunk_index", chunk_index),
                ("document_id", document_id),
            )
            if value is not None
        }
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=context or None,
        )


class ObjectNotFoundError(StorageError):
    """Key does not exist in the object store."""

    def __init__(self, key: str, chunk_index: int | None = None):
        super().__init__(
            message=f"Object '{key}' not found",
            key=key,
            chunk_index=chunk_index,
        )


class ObjectConflictError(StorageError):
    """Upsert-disabled write to a key that already exists."""

    def __init__(self, key: str):
        super().__init__(
            message=f"Object '{key}' already exists",
            key=key,
            error_code="conflict",
            status_code=409,
        )


class ConsistencyError(DeedVaultError):
    """An invariant was found broken at read time."""

    def __init__(self, message: str, document_id: str | None = None):
        self.document_id = document_id
        super().__init__(
            message=message,
            error_code="consistency_error",
            status_code=500,
            details={"document_id": document_id} if document_id else None,
        )


# =============================================================================
# Exception Handlers
# =============================================================================

def get_request_id(request: Request) -> Optional[str]:
    """Extract request ID from request."""
    return request.headers.get("X-Request-Id")


async def deedvault_error_handler(request: Request, exc: DeedVaultError) -> JSONResponse:
    """Handle DeedVault-specific exceptions."""
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "DeedVaultError: %s - %s",
        exc.error_code,
        exc.message,
        extra={"error_code": exc.error_code, "path": request.url.path},
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.error_code,
            "message": exc.message,
            "details": exc.details,
            "request_id": get_request_id(request),
        },
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle standard HTTP exceptions."""
    error_codes = {
        400: "bad_request",
        404: "not_found",
        405: "method_not_allowed",
        409: "conflict",
        422: "validation_error",
        500: "internal_error",
        502: "bad_gateway",
    }

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": error_codes.get(exc.status_code, "error"),
            "message": str(exc.detail) if exc.detail else f"HTTP {exc.status_code}",
            "details": None,
            "request_id": get_request_id(request),
        },
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors."""
    details = []
    for error in exc.errors():
        details.append({
            "loc": [str(part) for part in error.get("loc", [])],
            "msg": error.get("msg", ""),
            "type": error.get("type", ""),
        })

    logger.info(
        "Validation error on %s: %d issues",
        request.url.path,
        len(details),
    )

    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": details,
            "request_id": get_request_id(request),
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error(
        "Unhandled exception on %s: %s",
        request.url.path,
        str(exc),
        exc_info=True,
        extra={"path": request.url.path, "method": request.method},
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred",
            "details": None,
            "request_id": get_request_id(request),
        },
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(DeedVaultError, deedvault_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


__all__ = [
    "DeedVaultError",
    "ValidationError",
    "PreconditionError",
    "NotFoundError",
    "StorageError",
    "ObjectNotFoundError",
    "ObjectConflictError",
    "ConsistencyError",
    "setup_exception_handlers",
]
