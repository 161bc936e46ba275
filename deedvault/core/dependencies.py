"""
FastAPI dependencies shared by the routers.

Each engine is built per request from the configured settings, object
store, audit logger and database session. The store and audit logger
are the ones the app built at startup, when the lifespan has run. Tests
override the leaf dependencies (settings, store, audit, db) through
app.dependency_overrides.
"""

from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from deedvault.core.audit import AuditLogger, get_audit_logger
from deedvault.core.config import Settings, get_settings
from deedvault.core.database import get_db
from deedvault.services.chunk_receiver import ChunkReceiver
from deedvault.services.hash_engine import HashEngine
from deedvault.services.records import RecordStore
from deedvault.services.storage import ObjectStore, get_object_store
from deedvault.services.verification_engine import VerificationEngine


def get_store(request: Request) -> ObjectStore:
    store = getattr(request.app.state, "object_store", None)
    return store if store is not None else get_object_store()


def get_audit(request: Request) -> AuditLogger:
    audit = getattr(request.app.state, "audit_logger", None)
    return audit if audit is not None else get_audit_logger()


def get_actor_id(x_actor_id: Optional[str] = Header(None, alias="X-Actor-Id")) -> Optional[str]:
    """Caller identity, set by the upstream authorization layer."""
    return x_actor_id.strip() if x_actor_id and x_actor_id.strip() else None


def get_chunk_receiver(
    store: ObjectStore = Depends(get_store),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> ChunkReceiver:
    return ChunkReceiver(store, settings=settings, audit=audit)


def get_record_store(db: AsyncSession = Depends(get_db)) -> RecordStore:
    return RecordStore(db)


def get_hash_engine(
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_store),
    audit: AuditLogger = Depends(get_audit),
) -> HashEngine:
    return HashEngine(db, store, audit=audit)


def get_verification_engine(
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
    audit: AuditLogger = Depends(get_audit),
) -> VerificationEngine:
    return VerificationEngine(db, settings=settings, audit=audit)
