"""Tests for audit logging."""

import json

import pytest

from shared.models import AuditStatus, ExecutionContext
from mcp_server.audit import AuditLogger

CTX = ExecutionContext(organization_id="org_A", acting_user_id="u1")


class TestAuditLogger:
    """Tests for the audit logger."""

    def test_audit_entry_creation(self, tmp_path):
        """Test creating audit entries."""
        audit = AuditLogger(log_path=str(tmp_path / "audit.log"))

        entry = audit.create_entry(
            CTX, "listDeals", {"limit": 10}, AuditStatus.SUCCESS,
            execution_time_ms=12.5, request_id="req-1",
        )

        assert entry.organization_id == "org_A"
        assert entry.acting_user_id == "u1"
        assert entry.tool_name == "listDeals"
        assert entry.arguments == {"limit": 10}
        assert entry.status == AuditStatus.SUCCESS
        assert entry.execution_time_ms == 12.5
        assert entry.request_id == "req-1"

    def test_sensitive_data_redaction(self, tmp_path):
        """Test that sensitive arguments are redacted."""
        audit = AuditLogger(log_path=str(tmp_path / "audit.log"))

        entry = audit.create_entry(
            CTX,
            "upsertContact",
            {"name": "Ana", "password": "secret123", "nested": {"api_key": "key123"}},
            AuditStatus.SUCCESS,
        )

        assert entry.arguments["name"] == "Ana"
        assert entry.arguments["password"] == "[REDACTED]"
        assert entry.arguments["nested"]["api_key"] == "[REDACTED]"

    def test_non_object_arguments(self, tmp_path):
        audit = AuditLogger(log_path=str(tmp_path / "audit.log"))

        entry = audit.create_entry(CTX, "listDeals", "oops", AuditStatus.VALIDATION_ERROR, error="bad")

        assert entry.arguments == {}
        assert entry.error == "bad"

    @pytest.mark.asyncio
    async def test_flush_writes_json_lines(self, tmp_path):
        path = tmp_path / "logs" / "audit.log"
        audit = AuditLogger(log_path=str(path))

        await audit.log(audit.create_entry(CTX, "getMe", {}, AuditStatus.SUCCESS))
        await audit.log(audit.create_entry(CTX, "getDeal", {"dealId": "x"}, AuditStatus.ERROR, error="Deal not found: x"))
        assert audit.pending == 2
        assert not path.exists()

        await audit.flush()

        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert [line["tool_name"] for line in lines] == ["getMe", "getDeal"]
        assert lines[1]["status"] == "error"
        assert audit.pending == 0

    @pytest.mark.asyncio
    async def test_full_buffer_flushes(self, tmp_path):
        path = tmp_path / "audit.log"
        audit = AuditLogger(log_path=str(path), buffer_size=2)

        for _ in range(2):
            await audit.log(audit.create_entry(CTX, "getMe", {}, AuditStatus.SUCCESS))

        assert audit.pending == 0
        assert len(path.read_text().splitlines()) == 2

    @pytest.mark.asyncio
    async def test_disabled_logger_records_nothing(self, tmp_path):
        path = tmp_path / "nested" / "audit.log"
        audit = AuditLogger(log_path=str(path), enabled=False)

        await audit.log(audit.create_entry(CTX, "getMe", {}, AuditStatus.SUCCESS))
        await audit.flush()

        assert audit.pending == 0
        assert not path.parent.exists()

    @pytest.mark.asyncio
    async def test_unwritable_path_keeps_buffer_bounded(self, tmp_path):
        # A directory cannot be opened for append, so every flush fails
        audit = AuditLogger(log_path=str(tmp_path), buffer_size=2, max_pending=5)

        for i in range(20):
            await audit.log(audit.create_entry(CTX, "getMe", {}, AuditStatus.SUCCESS, request_id=f"req-{i}"))

        assert audit.pending == 5
        assert audit.dropped == 15
        assert [entry.request_id for entry in audit._buffer] == [f"req-{i}" for i in range(15, 20)]

    @pytest.mark.asyncio
    async def test_buffer_drains_once_path_is_writable(self, tmp_path):
        blocked = tmp_path / "audit.log"
        blocked.mkdir()
        audit = AuditLogger(log_path=str(blocked), buffer_size=1, max_pending=3)

        for _ in range(4):
            await audit.log(audit.create_entry(CTX, "getMe", {}, AuditStatus.SUCCESS))
        blocked.rmdir()
        await audit.flush()

        assert audit.pending == 0
        assert len(blocked.read_text().splitlines()) == 3
