"""
DeedVault - Cloudflare R2 Object Store
Async S3-compatible client signed with AWS Signature Version 4.
"""

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

import httpx

from deedvault.core.errors import ObjectConflictError, ObjectNotFoundError, StorageError
from deedvault.services.storage.base import (
    DEFAULT_CONTENT_TYPE,
    ObjectStore,
    StoredObject,
    validate_key,
)

logger = logging.getLogger(__name__)

EMPTY_PAYLOAD_HASH = hashlib.sha256(b"").hexdigest()


class R2ObjectStore(ObjectStore):
    """
    Cloudflare R2 storage using the S3-compatible API.
    Upsert-disabled writes are conditional (If-None-Match: *), so R2
    itself arbitrates concurrent writers of the same key.
    """

    REGION = "auto"
    SERVICE = "s3"

    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        self.account_id = account_id
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.host = f"{account_id}.r2.cloudflarestorage.com"
        self.endpoint = f"https://{self.host}"
        self.timeout = timeout
        self._client = client

    @property
    def provider_name(self) -> str:
        return "r2"

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _canonical_uri(self, key: str, bucket: str) -> str:
        return "/" + quote(f"{bucket}/{validate_key(key)}", safe="/-_.~")

    def _sign_request(self, method: str, canonical_uri: str, payload_hash: str) -> dict:
        """Build SigV4 authorization headers."""
        now = datetime.now(timezone.utc)
        amz_date = now.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now.strftime("%Y%m%d")

        signed_headers = "host;x-amz-content-sha256;x-amz-date"
        canonical_headers = (
            f"host:{self.host}\n"
            f"x-amz-content-sha256:{payload_hash}\n"
            f"x-amz-date:{amz_date}\n"
        )
        canonical_request = (
            f"{method}\n{canonical_uri}\n\n{canonical_headers}\n{signed_headers}\n{payload_hash}"
        )

        algorithm = "AWS4-HMAC-SHA256"
        credential_scope = f"{date_stamp}/{self.REGION}/{self.SERVICE}/aws4_request"
        string_to_sign = (
            f"{algorithm}\n{amz_date}\n{credential_scope}\n"
            f"{hashlib.sha256(canonical_request.encode()).hexdigest()}"
        )

        def sign(key: bytes, msg: str) -> bytes:
            return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()

        k_date = sign(("AWS4" + self.secret_access_key).encode("utf-8"), date_stamp)
        k_region = sign(k_date, self.REGION)
        k_service = sign(k_region, self.SERVICE)
        k_signing = sign(k_service, "aws4_request")

        signature = hmac.new(k_signing, string_to_sign.encode("utf-8"), hashlib.sha256).hexdigest()

        return {
            "Host": self.host,
            "x-amz-date": amz_date,
            "x-amz-content-sha256": payload_hash,
            "Authorization": (
                f"{algorithm} Credential={self.access_key_id}/{credential_scope}, "
                f"SignedHeaders={signed_headers}, Signature={signature}"
            ),
        }

    async def _request(
        self,
        method: str,
        key: str,
        bucket: str,
        content: bytes = b"",
        extra_headers: Optional[dict] = None,
    ) -> httpx.Response:
        canonical_uri = self._canonical_uri(key, bucket)
        payload_hash = hashlib.sha256(content).hexdigest() if content else EMPTY_PAYLOAD_HASH
        headers = self._sign_request(method, canonical_uri, payload_hash)
        if extra_headers:
            headers.update(extra_headers)

        try:
            return await self.client.request(
                method,
                f"{self.endpoint}{canonical_uri}",
                headers=headers,
                content=content or None,
            )
        except httpx.HTTPError as e:
            raise StorageError(f"R2 {method} failed: {e}", key=key)

    async def put(
        self,
        key: str,
        data: bytes,
        *,
        bucket: str,
        upsert: bool = False,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        content_type = content_type or DEFAULT_CONTENT_TYPE
        extra = {"Content-Type": content_type}
        if not upsert:
            extra["If-None-Match"] = "*"

        response = await self._request("PUT", key, bucket, content=data, extra_headers=extra)

        if response.status_code in (409, 412):
            raise ObjectConflictError(key)
        if response.status_code not in (200, 201):
            raise StorageError(f"R2 upload failed: {response.status_code}", key=key)

        return StoredObject(
            key=key,
            bucket=bucket,
            size=len(data),
            content_type=content_type,
            stored_at=datetime.now(timezone.utc),
        )

    async def get(self, key: str, *, bucket: str) -> bytes:
        response = await self._request("GET", key, bucket)
        if response.status_code == 404:
            raise ObjectNotFoundError(key)
        if response.status_code != 200:
            raise StorageError(f"R2 download failed: {response.status_code}", key=key)
        return response.content

    async def exists(self, key: str, *, bucket: str) -> bool:
        response = await self._request("HEAD", key, bucket)
        return response.status_code == 200

    async def remove(self, keys: list[str], *, bucket: str) -> list[str]:
        # S3 DELETE succeeds for absent keys, so probe first to report real removals
        removed = []
        for key in keys:
            try:
                if not await self.exists(key, bucket=bucket):
                    continue
                response = await self._request("DELETE", key, bucket)
            except StorageError as e:
                logger.warning("R2 delete of %s/%s failed: %s", bucket, key, e.message)
                continue
            if response.status_code in (200, 204):
                removed.append(key)
            else:
                logger.warning("R2 delete of %s/%s returned %s", bucket, key, response.status_code)
        return removed
