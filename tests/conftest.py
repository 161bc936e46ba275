"""
Shared fixtures for DeedVault tests.

Every test gets its own SQLite file, an in-memory object store and an
audit logger writing under tmp_path. Thresholds are tiny so chunked paths
run on a few bytes.
"""

from typing import Optional
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from deedvault.core.audit import AuditLogger
from deedvault.core.config import Settings
from deedvault.core.database import build_engine, build_session_factory, get_db, init_db
from deedvault.core.dependencies import get_audit, get_store
from deedvault.models.models import Document, DocumentStatus
from deedvault.services.hash_engine import HashEngine
from deedvault.services.records import RecordStore
from deedvault.services.storage import InMemoryObjectStore

PDF = "application/pdf"

_UNSET = object()


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        storage_provider="memory",
        chunk_size=4,
        multipart_threshold=10,
        max_verification_file_size=2048,
        max_batch_size=3,
        max_batch_total_size=4096,
        audit_log_dir=str(tmp_path / "audit"),
        audit_webhook_url=None,
        log_level="WARNING",
    )


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture
def audit(settings) -> AuditLogger:
    return AuditLogger(log_dir=settings.audit_log_dir)


@pytest.fixture
def make_document(db, store, settings):
    """Store content and register a document pointing at it."""

    async def _make(
        content: bytes = b"%PDF-1.7 original deed of transfer",
        status: DocumentStatus = DocumentStatus.PENDING,
        mime_type: str = PDF,
        file_size=_UNSET,
        key: Optional[str] = None,
    ) -> Document:
        key = key or f"properties/prop-1/{uuid4().hex}.pdf"
        await store.put(key, content, bucket=settings.default_bucket)
        return await RecordStore(db).create_document(
            property_id="prop-1",
            doc_number="DEED-0001",
            storage_key=key,
            storage_bucket=settings.default_bucket,
            mime_type=mime_type,
            file_size=len(content) if file_size is _UNSET else file_size,
            original_filename="deed.pdf",
            uploader_id="clerk-1",
            status=status,
        )

    return _make


@pytest.fixture
def make_hashed_document(db, store, audit, make_document):
    """Register a document and run it through the hash engine."""

    async def _make(content: bytes = b"%PDF-1.7 original deed of transfer", **kwargs) -> Document:
        document = await make_document(content=content, **kwargs)
        await HashEngine(db, store, audit=audit).compute_and_record(document.id, actor_id="clerk-1")
        return document

    return _make


@pytest.fixture
def app(settings, session_factory, store, audit):
    from deedvault.main import create_app

    app = create_app(settings)

    async def override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_audit] = lambda: audit
    return app


@pytest.fixture
async def client(app, engine):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
