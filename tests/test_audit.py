"""
Audit and logging tests: JSON-lines backend, query filters,
fire-and-forget delivery, and structured log formatting.
"""

import json
import logging

import httpx
import pytest

from deedvault.core.audit import AuditAction, AuditLogger
from deedvault.core.errors import ObjectConflictError, StorageError
from deedvault.core.logging_config import ColoredFormatter, JSONFormatter, setup_logging


@pytest.mark.anyio
async def test_record_writes_json_line(audit, settings, tmp_path):
    entry = await audit.record(
        action=AuditAction.DOCUMENT_HASH,
        actor_id="clerk-1",
        resource_type="document",
        resource_id="doc-1",
        details={"hash": "ab" * 32},
    )

    files = list((tmp_path / "audit").glob("audit_*.jsonl"))
    assert len(files) == 1
    lines = files[0].read_text(encoding="utf-8").splitlines()
    assert len(lines) == 1
    stored = json.loads(lines[0])
    assert stored["id"] == entry.id
    assert stored["action"] == "document.hash"
    assert stored["actor_id"] == "clerk-1"
    assert stored["success"] is True


@pytest.mark.anyio
async def test_query_filters(audit):
    await audit.record(action=AuditAction.DOCUMENT_HASH, resource_id="doc-1")
    await audit.record(action=AuditAction.DOCUMENT_VERIFY, resource_id="doc-1")
    await audit.record(action=AuditAction.DOCUMENT_HASH, resource_id="doc-2")

    assert len(await audit.query()) == 3
    assert len(await audit.query(action=AuditAction.DOCUMENT_HASH)) == 2
    assert len(await audit.query(resource_id="doc-1")) == 2
    both = await audit.query(action=AuditAction.DOCUMENT_HASH, resource_id="doc-2")
    assert [e["resource_id"] for e in both] == ["doc-2"]
    assert len(await audit.query(limit=1)) == 1


@pytest.mark.anyio
async def test_query_without_log_dir(tmp_path):
    audit = AuditLogger(log_dir=tmp_path / "never-created")
    assert await audit.query() == []


@pytest.mark.anyio
async def test_unwritable_log_dir_is_swallowed(tmp_path, caplog):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file in the way")
    audit = AuditLogger(log_dir=blocker)

    entry = await audit.record(action=AuditAction.CHUNK_CLEANUP, resource_id="k")

    assert entry.action == AuditAction.CHUNK_CLEANUP
    assert "Failed to write audit log" in caplog.text


@pytest.mark.anyio
async def test_webhook_delivery(tmp_path, monkeypatch):
    sent = []

    async def fake_post(self, url, **kwargs):
        sent.append((url, kwargs["json"]))
        return httpx.Response(204)

    monkeypatch.setattr(httpx.AsyncClient, "post", fake_post)
    audit = AuditLogger(log_dir=tmp_path, webhook_url="https://audit.example.test/hook")

    await audit.record(action=AuditAction.DOCUMENT_UPLOAD, resource_id="deed.pdf")

    assert len(sent) == 1
    assert sent[0][0] == "https://audit.example.test/hook"
    assert sent[0][1]["action"] == "document.upload"


@pytest.mark.anyio
async def test_webhook_failure_is_swallowed(tmp_path, monkeypatch, caplog):
    async def failing_post(self, url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx.AsyncClient, "post", failing_post)
    audit = AuditLogger(log_dir=tmp_path, webhook_url="https://audit.example.test/hook")

    await audit.record(action=AuditAction.DOCUMENT_VERIFY, resource_id="doc-1", success=False)

    assert "Failed to send audit to webhook" in caplog.text
    # The file backend still got the entry
    assert len(await audit.query()) == 1


def test_json_formatter_includes_extras():
    record = logging.LogRecord("deedvault.test", logging.INFO, __file__, 10, "hashed %s", ("doc-1",), None)
    record.document_id = "doc-1"
    record._private = "hidden"

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "hashed doc-1"
    assert payload["level"] == "INFO"
    assert payload["document_id"] == "doc-1"
    assert "_private" not in payload


def test_json_formatter_stamps_service_and_record_time():
    record = logging.LogRecord("deedvault.test", logging.WARNING, __file__, 10, "chunk missing", (), None)
    record.created = 0.0
    record.key = "deeds/a.pdf.part1"

    payload = json.loads(JSONFormatter(service="deedvault").format(record))

    assert payload["timestamp"] == "1970-01-01T00:00:00+00:00"
    assert payload["service"] == "deedvault"
    assert payload["key"] == "deeds/a.pdf.part1"


def test_colored_formatter_shows_context():
    record = logging.LogRecord("deedvault.test", logging.INFO, __file__, 10, "hashed", (), None)
    record.document_id = "doc-1"
    record.request_id = "req-7"
    record.file_size = 42

    line = ColoredFormatter().format(record)

    assert "hashed" in line
    assert "request_id=req-7 document_id=doc-1" in line
    assert "file_size" not in line


def test_setup_logging_writes_json_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    log_file = tmp_path / "deedvault.log"
    try:
        setup_logging(level="INFO", log_file=str(log_file), service="deedvault")
        setup_logging(level="INFO", log_file=str(log_file), service="deedvault")
        assert len(root.handlers) == 2

        logging.getLogger("deedvault.test").info("stored", extra={"document_id": "doc-9"})
        for handler in root.handlers:
            handler.flush()
            handler.close()
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["document_id"] for line in lines] == ["doc-9"]


def test_setup_logging_rejects_unknown_level():
    with pytest.raises(ValueError):
        setup_logging(level="LOUD")

def test_storage_error_details():
    error = StorageError("read failed", key="a/b.pdf", chunk_index=2)
    assert error.status_code == 502
    assert error.details == {"key": "a/b.pdf", "chunk_index": 2}

    conflict = ObjectConflictError("a/b.pdf")
    assert isinstance(conflict, StorageError)
    assert conflict.status_code == 409
    assert conflict.error_code == "conflict"
