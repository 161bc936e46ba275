"""
Audit Logging for DeedVault.

Records integrity-relevant actions (upload combine, hashing, verification
decisions, chunk cleanup). Audit delivery is fire-and-forget: a failing
backend is logged and never fails the operation being audited.

Usage:
    from deedvault.core.audit import AuditAction, get_audit_logger

    await get_audit_logger().record(
        action=AuditAction.DOCUMENT_HASH,
        actor_id="user123",
        resource_type="document",
        resource_id="doc456",
        details={"hash": "ab12...", "file_size": 1024},
    )
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import httpx

from deedvault.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    """Enumeration of auditable actions."""

    DOCUMENT_UPLOAD = "document.upload"
    DOCUMENT_HASH = "document.hash"
    DOCUMENT_VERIFY = "document.verify"
    CHUNK_CLEANUP = "upload.chunks.cleanup"


class AuditEntry:
    """Represents a single audit log entry."""

    def __init__(
        self,
        action: AuditAction,
        actor_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        success: bool = True,
        error_message: str | None = None,
    ):
        self.id = str(uuid4())
        self.timestamp = datetime.now(timezone.utc)
        self.action = action
        self.actor_id = actor_id
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.details = details or {}
        self.success = success
        self.error_message = error_message

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "actor_id": self.actor_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details,
            "success": self.success,
            "error_message": self.error_message,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


class AuditLogger:
    """
    Audit sink with a JSON-lines file backend (rotated daily)
    and an optional webhook backend.
    """

    def __init__(self, log_dir: str | Path = "logs/audit", webhook_url: Optional[str] = None):
        self._log_dir = Path(log_dir)
        self._webhook_url = webhook_url

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuditLogger":
        return cls(log_dir=settings.audit_log_dir, webhook_url=settings.audit_webhook_url)

    def _get_log_file(self) -> Path:
        date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        return self._log_dir / f"audit_{date_str}.jsonl"

    async def record(
        self,
        action: AuditAction,
        actor_id: str | None = None,
        resource_type: str | None = None,
        resource_id: str | None = None,
        details: dict[str, Any] | None = None,
        success: bool = True,
        error_message: str | None = None,
    ) -> AuditEntry:
        """Record an audit event. Never raises."""
        entry = AuditEntry(
            action=action,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details,
            success=success,
            error_message=error_message,
        )
        await self.log(entry)
        return entry

    async def log(self, entry: AuditEntry) -> None:
        await self._log_to_file(entry)

        if self._webhook_url:
            await self._log_to_webhook(entry)

        log_level = logging.WARNING if not entry.success else logging.INFO
        logger.log(
            log_level,
            "AUDIT: %s | actor=%s | resource=%s/%s | success=%s",
            entry.action.value,
            entry.actor_id or "anonymous",
            entry.resource_type or "-",
            entry.resource_id or "-",
            entry.success,
        )

    async def _log_to_file(self, entry: AuditEntry) -> None:
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            with open(self._get_log_file(), "a", encoding="utf-8") as f:
                f.write(entry.to_json() + "\n")
        except Exception as e:
            logger.error("Failed to write audit log: %s", e)

    async def _log_to_webhook(self, entry: AuditEntry) -> None:
        try:
            async with httpx.AsyncClient() as client:
                await client.post(
                    self._webhook_url,
                    json=entry.to_dict(),
                    timeout=5.0,
                )
        except Exception as e:
            logger.error("Failed to send audit to webhook: %s", e)

    async def query(
        self,
        action: AuditAction | None = None,
        resource_id: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Query audit entries from the JSON-lines files, newest file first."""
        results = []

        for log_file in sorted(self._log_dir.glob("audit_*.jsonl"), reverse=True):
            try:
                with open(log_file, "r", encoding="utf-8") as f:
                    for line in f:
                        if len(results) >= limit:
                            return results
                        entry = json.loads(line)
                        if action and entry.get("action") != action.value:
                            continue
                        if resource_id and entry.get("resource_id") != resource_id:
                            continue
                        results.append(entry)
            except (OSError, json.JSONDecodeError) as e:
                logger.error("Error reading audit file %s: %s", log_file, e)

        return results


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create the audit logger singleton."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger.from_settings(get_settings())
    return _audit_logger
