"""Audit logging for tool invocations.

Every ``tools/call`` that reaches a known tool is recorded: organization,
acting user, tool, redacted arguments, outcome and duration. Entries go to
the structured logger immediately and to a JSON-lines file in batches.
"""

import asyncio
import uuid
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import aiofiles

from shared.logging import get_logger
from shared.models import AuditEntry, AuditStatus, ExecutionContext

logger = get_logger(__name__)


class AuditLogger:
    """
    Audit logger for tool invocations.

    Writes are buffered and flushed when the buffer fills up or on shutdown.
    While the file cannot be written, at most ``max_pending`` entries are
    held; beyond that the oldest are dropped.
    """

    # Argument names whose values never reach the audit trail
    SENSITIVE_ARGS = {"password", "token", "secret", "api_key", "apikey", "credential"}

    def __init__(
        self,
        log_path: str = "logs/audit.log",
        enabled: bool = True,
        buffer_size: int = 100,
        max_pending: int = 10_000,
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self.buffer_size = buffer_size
        self._buffer: deque[AuditEntry] = deque(maxlen=max(max_pending, 1))
        self.dropped = 0
        self._lock = asyncio.Lock()

        if enabled:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def _redact_sensitive(self, arguments: dict[str, Any]) -> dict[str, Any]:
        """Redact sensitive arguments, recursing into nested objects."""
        redacted = {}
        for key, value in arguments.items():
            if key.lower() in self.SENSITIVE_ARGS:
                redacted[key] = "[REDACTED]"
            elif isinstance(value, dict):
                redacted[key] = self._redact_sensitive(value)
            else:
                redacted[key] = value
        return redacted

    def create_entry(
        self,
        context: ExecutionContext,
        tool_name: str,
        arguments: Any,
        status: AuditStatus,
        error: Optional[str] = None,
        execution_time_ms: float = 0,
        request_id: Optional[str] = None,
    ) -> AuditEntry:
        """Build an audit entry for one tool invocation."""
        return AuditEntry(
            id=str(uuid.uuid4()),
            timestamp=datetime.utcnow(),
            organization_id=context.organization_id,
            acting_user_id=context.acting_user_id,
            tool_name=tool_name,
            arguments=self._redact_sensitive(arguments) if isinstance(arguments, dict) else {},
            status=status,
            error=error,
            execution_time_ms=execution_time_ms,
            request_id=request_id,
        )

    async def log(self, entry: AuditEntry) -> None:
        """
        Record an audit entry.

        Args:
            entry: Entry built with ``create_entry``
        """
        if not self.enabled:
            return

        logger.info(
            "Tool invoked",
            audit_id=entry.id,
            organization_id=entry.organization_id,
            acting_user_id=entry.acting_user_id,
            tool=entry.tool_name,
            status=entry.status.value,
            execution_time_ms=round(entry.execution_time_ms, 2),
        )

        async with self._lock:
            if len(self._buffer) == self._buffer.maxlen:
                self._drop_oldest()
            self._buffer.append(entry)

            if len(self._buffer) >= self.buffer_size:
                await self._flush()

    async def _flush(self) -> None:
        """Flush buffered entries to file."""
        if not self._buffer:
            return

        entries_to_write = list(self._buffer)
        self._buffer.clear()

        try:
            async with aiofiles.open(self.log_path, "a") as f:
                for entry in entries_to_write:
                    await f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write audit log", error=str(e), path=str(self.log_path))
            # Keep the entries for the next flush
            self._buffer.extend(entries_to_write)

    def _drop_oldest(self) -> None:
        oldest = self._buffer.popleft()
        self.dropped += 1
        logger.warning(
            "Audit buffer full; dropping oldest entry",
            audit_id=oldest.id,
            total_dropped=self.dropped,
            max_pending=self._buffer.maxlen,
        )

    async def flush(self) -> None:
        """Public method to flush the audit buffer."""
        async with self._lock:
            await self._flush()

    @property
    def pending(self) -> int:
        return len(self._buffer)
