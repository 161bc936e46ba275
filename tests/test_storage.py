"""
Object store provider tests: write discipline, missing keys, removal counts,
key validation and the R2 request shape.
"""

import asyncio
from pathlib import Path

import httpx
import pytest

from deedvault.core.errors import (
    ObjectConflictError,
    ObjectNotFoundError,
    StorageError,
    ValidationError,
)
from deedvault.services.storage import (
    InMemoryObjectStore,
    LocalObjectStore,
    R2ObjectStore,
    get_provider,
    provider_from_settings,
    validate_key,
)


@pytest.fixture(params=["memory", "local"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryObjectStore()
    return LocalObjectStore(root=tmp_path / "objects")


# =============================================================================
# Shared behaviour
# =============================================================================

class TestWriteDiscipline:

    @pytest.mark.anyio
    async def test_put_then_get(self, any_store):
        stored = await any_store.put("deeds/a.pdf", b"abc", bucket="documents", content_type="application/pdf")
        assert stored.size == 3
        assert stored.content_type == "application/pdf"
        assert await any_store.get("deeds/a.pdf", bucket="documents") == b"abc"

    @pytest.mark.anyio
    async def test_upsert_disabled_first_writer_wins(self, any_store):
        await any_store.put("deeds/a.pdf", b"first", bucket="documents")
        with pytest.raises(ObjectConflictError) as exc_info:
            await any_store.put("deeds/a.pdf", b"second", bucket="documents")
        assert exc_info.value.status_code == 409
        assert exc_info.value.error_code == "conflict"
        assert await any_store.get("deeds/a.pdf", bucket="documents") == b"first"

    @pytest.mark.anyio
    async def test_upsert_enabled_last_writer_wins(self, any_store):
        await any_store.put("deeds/a.pdf.part0", b"first", bucket="documents", upsert=True)
        await any_store.put("deeds/a.pdf.part0", b"second", bucket="documents", upsert=True)
        assert await any_store.get("deeds/a.pdf.part0", bucket="documents") == b"second"

    @pytest.mark.anyio
    async def test_concurrent_upserts_all_succeed(self, any_store):
        payloads = [f"resend-{i}".encode() for i in range(8)]
        results = await asyncio.gather(
            *(any_store.put("deeds/a.pdf.part0", p, bucket="documents", upsert=True) for p in payloads),
            return_exceptions=True,
        )
        assert [r for r in results if isinstance(r, BaseException)] == []
        assert await any_store.get("deeds/a.pdf.part0", bucket="documents") in payloads

    @pytest.mark.anyio
    async def test_concurrent_creates_single_winner(self, any_store):
        results = await asyncio.gather(
            *(any_store.put("deeds/a.pdf", f"writer-{i}".encode(), bucket="documents") for i in range(8)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, BaseException)]
        losers = [r for r in results if isinstance(r, BaseException)]
        assert len(winners) == 1
        assert all(isinstance(e, ObjectConflictError) for e in losers)

    @pytest.mark.anyio
    async def test_get_missing_raises_not_found(self, any_store):
        with pytest.raises(ObjectNotFoundError) as exc_info:
            await any_store.get("deeds/missing.pdf", bucket="documents")
        assert isinstance(exc_info.value, StorageError)
        assert exc_info.value.key == "deeds/missing.pdf"

    @pytest.mark.anyio
    async def test_remove_reports_only_existing_keys(self, any_store):
        await any_store.put("a.part0", b"x", bucket="documents")
        await any_store.put("a.part2", b"z", bucket="documents")
        removed = await any_store.remove(["a.part0", "a.part1", "a.part2"], bucket="documents")
        assert sorted(removed) == ["a.part0", "a.part2"]
        assert not await any_store.exists("a.part0", bucket="documents")

    @pytest.mark.anyio
    async def test_buckets_are_isolated(self, any_store):
        await any_store.put("same.pdf", b"one", bucket="documents")
        await any_store.put("same.pdf", b"two", bucket="verifications")
        assert await any_store.get("same.pdf", bucket="documents") == b"one"
        assert await any_store.get("same.pdf", bucket="verifications") == b"two"



class TestLocalObjectStore:

    @pytest.fixture
    def local_store(self, tmp_path):
        return LocalObjectStore(root=tmp_path / "objects")

    @staticmethod
    def bucket_files(tmp_path):
        return sorted(p.name for p in (tmp_path / "objects" / "documents").iterdir())

    @pytest.mark.anyio
    async def test_failed_write_leaves_key_free(self, local_store, tmp_path, monkeypatch):
        def disk_full(self, data):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(Path, "write_bytes", disk_full)
        with pytest.raises(StorageError) as exc_info:
            await local_store.put("deeds/a.pdf", b"combined bytes", bucket="documents")
        monkeypatch.undo()

        assert not isinstance(exc_info.value, ObjectConflictError)
        assert not await local_store.exists("deeds/a.pdf", bucket="documents")
        assert list((tmp_path / "objects" / "documents" / "deeds").iterdir()) == []

        await local_store.put("deeds/a.pdf", b"combined bytes", bucket="documents")
        assert await local_store.get("deeds/a.pdf", bucket="documents") == b"combined bytes"

    @pytest.mark.anyio
    async def test_no_staging_files_left_behind(self, local_store, tmp_path):
        await asyncio.gather(
            *(local_store.put("a.pdf.part0", bytes([i]) * 64, bucket="documents", upsert=True) for i in range(8))
        )
        with pytest.raises(ObjectConflictError):
            await local_store.put("a.pdf.part0", b"x", bucket="documents")

        assert self.bucket_files(tmp_path) == ["a.pdf.part0"]

class TestKeyValidation:

    @pytest.mark.parametrize("key", ["", "   ", "/abs.pdf", "../escape.pdf", "a/../b", "a//b", "a\\b", "a\x00b"])
    def test_rejects_unsafe_keys(self, key):
        with pytest.raises(ValidationError):
            validate_key(key)

    def test_accepts_nested_keys(self):
        assert validate_key("properties/p1/deed.pdf.part3") == "properties/p1/deed.pdf.part3"

    @pytest.mark.anyio
    async def test_local_store_refuses_escape(self, tmp_path):
        store = LocalObjectStore(root=tmp_path)
        with pytest.raises(ValidationError):
            await store.put("../outside.pdf", b"x", bucket="documents")
        assert not (tmp_path.parent / "outside.pdf").exists()


# =============================================================================
# Provider factory
# =============================================================================

class TestProviderFactory:

    def test_known_providers(self, tmp_path):
        assert get_provider("memory").provider_name == "memory"
        assert get_provider("local", root=tmp_path).provider_name == "local"
        assert get_provider("r2", account_id="acct", access_key_id="k", secret_access_key="s").provider_name == "r2"

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            get_provider("ftp")

    def test_from_settings(self, settings, tmp_path):
        local = provider_from_settings(settings.model_copy(update={"storage_provider": "local", "storage_root": str(tmp_path)}))
        assert isinstance(local, LocalObjectStore)
        assert isinstance(provider_from_settings(settings), InMemoryObjectStore)


# =============================================================================
# R2
# =============================================================================

class TestR2ObjectStore:

    def make_store(self, handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return R2ObjectStore("acct", "AKID", "secret", client=client)

    @pytest.mark.anyio
    async def test_put_is_signed_and_conditional(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        store = self.make_store(handler)
        await store.put("deeds/a b.pdf", b"abc", bucket="documents")

        request = seen[0]
        assert request.method == "PUT"
        assert request.url.host == "acct.r2.cloudflarestorage.com"
        assert request.url.raw_path == b"/documents/deeds/a%20b.pdf"
        assert request.headers["If-None-Match"] == "*"
        assert request.headers["Authorization"].startswith("AWS4-HMAC-SHA256 Credential=AKID/")
        assert request.headers["x-amz-content-sha256"] == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )

    @pytest.mark.anyio
    async def test_upsert_put_is_unconditional(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200)

        await self.make_store(handler).put("a.part0", b"x", bucket="documents", upsert=True)
        assert "If-None-Match" not in seen[0].headers

    @pytest.mark.anyio
    async def test_precondition_failed_maps_to_conflict(self):
        store = self.make_store(lambda request: httpx.Response(412))
        with pytest.raises(ObjectConflictError):
            await store.put("a.pdf", b"x", bucket="documents")

    @pytest.mark.anyio
    async def test_missing_object_maps_to_not_found(self):
        store = self.make_store(lambda request: httpx.Response(404))
        with pytest.raises(ObjectNotFoundError):
            await store.get("a.pdf", bucket="documents")

    @pytest.mark.anyio
    async def test_server_error_maps_to_storage_error(self):
        store = self.make_store(lambda request: httpx.Response(500))
        with pytest.raises(StorageError) as exc_info:
            await store.get("a.pdf", bucket="documents")
        assert not isinstance(exc_info.value, ObjectNotFoundError)

    @pytest.mark.anyio
    async def test_remove_skips_absent_keys(self):
        existing = {"/documents/a.part0"}
        deleted = []

        def handler(request):
            if request.method == "HEAD":
                return httpx.Response(200 if request.url.path in existing else 404)
            deleted.append(request.url.path)
            return httpx.Response(204)

        removed = await self.make_store(handler).remove(["a.part0", "a.part1"], bucket="documents")
        assert removed == ["a.part0"]
        assert deleted == ["/documents/a.part0"]
