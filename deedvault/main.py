"""
DeedVault - FastAPI Application
Document integrity service: chunked uploads, fingerprinting and verification.

Run with:
    uvicorn deedvault.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from deedvault import __version__
from deedvault.core.audit import AuditLogger
from deedvault.core.config import Settings, get_settings
from deedvault.core.database import build_engine, build_session_factory, close_db, init_db
from deedvault.core.errors import setup_exception_handlers
from deedvault.core.logging_config import setup_logging
from deedvault.core.logging_middleware import RequestLoggingMiddleware
from deedvault.routers import documents, health, uploads, verifications
from deedvault.services.storage import provider_from_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    logger.info(
        "Starting %s %s (storage: %s)",
        settings.app_name,
        settings.app_version,
        settings.storage_provider,
    )
    # Per-app resources, read back by the request dependencies
    engine = build_engine(settings.database_url, echo=settings.debug)
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.object_store = provider_from_settings(settings)
    app.state.audit_logger = AuditLogger.from_settings(settings)
    await init_db(engine)

    yield

    await engine.dispose()
    await close_db()
    logger.info("Shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application. Tests pass their own settings."""
    settings = settings or get_settings()
    setup_logging(
        level=settings.log_level,
        json_format=settings.log_json,
        log_file=settings.log_file,
        service=settings.app_name,
    )

    app = FastAPI(
        title=settings.app_name,
        description="Chunked document upload, SHA-256 fingerprinting and constant-time verification",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    setup_exception_handlers(app)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router, tags=["Health"])
    app.include_router(uploads.router, prefix="/api/uploads", tags=["Uploads"])
    app.include_router(documents.router, prefix="/api/documents", tags=["Documents"])
    app.include_router(verifications.router, prefix="/api/verifications", tags=["Verifications"])

    if settings is not get_settings():
        app.dependency_overrides[get_settings] = lambda: settings

    return app


app = create_app()
