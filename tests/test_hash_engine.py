"""
Hash engine tests: digest helpers, recording, status-based idempotency
and failure handling.
"""

import hashlib

import pytest

from deedvault.core.audit import AuditAction
from deedvault.core.errors import ConsistencyError, NotFoundError, StorageError
from deedvault.models.models import DocumentStatus
from deedvault.services.hash_engine import (
    HashEngine,
    iter_blocks,
    sha256_hex,
    sha256_hex_from_chunks,
)
from deedvault.services.records import RecordStore

ABC_SHA256 = "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


@pytest.fixture
def hash_engine(db, store, audit):
    return HashEngine(db, store, audit=audit)


# =============================================================================
# Digest helpers
# =============================================================================

class TestDigestHelpers:

    def test_known_vector(self):
        assert sha256_hex(b"abc") == ABC_SHA256

    def test_lowercase_hex_of_fixed_length(self):
        digest = sha256_hex(b"\x00" * 100)
        assert len(digest) == 64
        assert digest == digest.lower()

    def test_chunked_digest_matches_whole(self):
        data = bytes(range(256)) * 50
        progress = []
        digest = sha256_hex_from_chunks(iter_blocks(data, block_size=1000), on_progress=progress.append)
        assert digest == hashlib.sha256(data).hexdigest()
        assert progress[-1] == len(data)
        assert len(progress) == 13


# =============================================================================
# Recording
# =============================================================================

class TestComputeAndRecord:

    @pytest.mark.anyio
    async def test_records_hash_and_advances_status(self, hash_engine, make_document, db):
        document = await make_document(content=b"abc")

        result = await hash_engine.compute_and_record(document.id, actor_id="clerk-1")

        assert result.sha256_hash == ABC_SHA256
        assert result.algorithm == "SHA-256"
        assert result.file_size == 3
        assert not result.already_hashed

        refreshed = await RecordStore(db).load_document(document.id)
        assert refreshed.status == DocumentStatus.HASHED.value
        assert refreshed.hash_computed_at is not None
        hashes = await RecordStore(db).list_document_hashes(document.id)
        assert [h.sha256_hash for h in hashes] == [ABC_SHA256]

    @pytest.mark.anyio
    async def test_second_call_is_a_no_op(self, hash_engine, make_document, db):
        document = await make_document(content=b"abc")

        first = await hash_engine.compute_and_record(document.id)
        second = await hash_engine.compute_and_record(document.id)

        assert second.already_hashed
        assert second.sha256_hash == first.sha256_hash
        assert second.hash_id == first.hash_id
        assert len(await RecordStore(db).list_document_hashes(document.id)) == 1

    @pytest.mark.anyio
    async def test_no_op_does_not_reread_replaced_object(self, hash_engine, make_document, store, db):
        # Idempotency is by status: a replaced object keeps its stale fingerprint
        document = await make_document(content=b"abc")
        await hash_engine.compute_and_record(document.id)

        await store.put(document.storage_key, b"tampered bytes", bucket=document.storage_bucket, upsert=True)
        result = await hash_engine.compute_and_record(document.id)

        assert result.already_hashed
        assert result.sha256_hash == ABC_SHA256
        assert len(await RecordStore(db).list_document_hashes(document.id)) == 1

    @pytest.mark.anyio
    @pytest.mark.parametrize("status", [DocumentStatus.VERIFIED, DocumentStatus.REJECTED])
    async def test_no_op_for_later_statuses(self, hash_engine, make_document, db, status):
        document = await make_document(content=b"abc")
        await hash_engine.compute_and_record(document.id)
        await RecordStore(db).update_document_status(document, status)

        result = await hash_engine.compute_and_record(document.id)

        assert result.already_hashed
        assert (await RecordStore(db).load_document(document.id)).status == status.value

    @pytest.mark.anyio
    async def test_unreadable_object_leaves_status(self, hash_engine, make_document, store, db):
        document = await make_document(content=b"abc")
        await store.remove([document.storage_key], bucket=document.storage_bucket)

        with pytest.raises(StorageError) as exc_info:
            await hash_engine.compute_and_record(document.id)

        assert exc_info.value.document_id == document.id
        assert exc_info.value.key == document.storage_key
        refreshed = await RecordStore(db).load_document(document.id)
        assert refreshed.status == DocumentStatus.PENDING.value
        assert refreshed.hash_computed_at is None
        assert await RecordStore(db).list_document_hashes(document.id) == []

    @pytest.mark.anyio
    async def test_unknown_document(self, hash_engine):
        with pytest.raises(NotFoundError):
            await hash_engine.compute_and_record("no-such-document")

    @pytest.mark.anyio
    async def test_hashed_without_fingerprint_is_inconsistent(self, hash_engine, make_document):
        document = await make_document(status=DocumentStatus.HASHED)
        with pytest.raises(ConsistencyError):
            await hash_engine.compute_and_record(document.id)

    @pytest.mark.anyio
    async def test_hash_is_audited(self, hash_engine, make_document, audit):
        document = await make_document(content=b"abc")
        await hash_engine.compute_and_record(document.id, actor_id="clerk-1")

        entries = await audit.query(action=AuditAction.DOCUMENT_HASH, resource_id=document.id)
        assert len(entries) == 1
        assert entries[0]["details"]["hash"] == ABC_SHA256
        assert entries[0]["details"]["file_size"] == 3
        assert "duration_ms" in entries[0]["details"]


# =============================================================================
# History
# =============================================================================

class TestHashHistory:

    @pytest.mark.anyio
    async def test_history_counts_changes(self, hash_engine, make_document, db):
        document = await make_document(content=b"abc")
        await hash_engine.compute_and_record(document.id)
        records = RecordStore(db)
        await records.insert_document_hash(document.id, "f" * 64)
        await records.insert_document_hash(document.id, "f" * 64)

        history = await hash_engine.hash_history(document.id)

        assert history.total == 3
        assert history.hash_changes == 1
        assert history.latest.sha256_hash == "f" * 64
        assert history.hashes[0].sha256_hash == ABC_SHA256

    @pytest.mark.anyio
    async def test_empty_history(self, hash_engine, make_document):
        document = await make_document()
        history = await hash_engine.hash_history(document.id)
        assert history.total == 0
        assert history.latest is None
        assert history.hash_changes == 0
