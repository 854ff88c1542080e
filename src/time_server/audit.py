"""Audit logging for tool invocations.

Every dispatch is recorded with its session, tool, parameters, timing,
and outcome: immediately to the structured log, and in batches to a
JSON-lines file.
"""

import asyncio
import uuid
from pathlib import Path

import aiofiles

from shared.logging import get_logger
from shared.models import AuditEntry, ToolRequest, ToolResponse

logger = get_logger(__name__)


class AuditLogger:
    """
    Audit logger for tool invocations.

    Entries are buffered and appended to ``log_path`` once ``buffer_size``
    entries have accumulated, or when ``flush`` is called.
    """

    def __init__(
        self,
        log_path: str = "logs/audit.log",
        enabled: bool = True,
        buffer_size: int = 100
    ) -> None:
        self.log_path = Path(log_path)
        self.enabled = enabled
        self.buffer_size = buffer_size
        self._buffer: list[AuditEntry] = []
        self._lock = asyncio.Lock()

        if self.enabled:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def create_entry(
        self,
        request: ToolRequest,
        response: ToolResponse,
        execution_time_ms: float = 0
    ) -> AuditEntry:
        """Build an audit entry from a request and its response."""
        error = response.error
        return AuditEntry(
            id=str(uuid.uuid4()),
            session_id=request.session_id,
            request_id=request.request_id,
            tool_name=request.tool_name,
            parameters=request.params,
            success=response.success,
            error_kind=error.code if error else None,
            error=error.message if error else None,
            execution_time_ms=execution_time_ms,
        )

    async def log(
        self,
        request: ToolRequest,
        response: ToolResponse,
        execution_time_ms: float = 0
    ) -> None:
        """Record one tool invocation."""
        if not self.enabled:
            return

        entry = self.create_entry(request, response, execution_time_ms)

        logger.info(
            "Tool executed",
            audit_id=entry.id,
            session_id=entry.session_id,
            request_id=entry.request_id,
            tool=entry.tool_name,
            success=entry.success,
            error_kind=entry.error_kind.value if entry.error_kind else None,
            execution_time_ms=round(entry.execution_time_ms, 2),
        )

        async with self._lock:
            self._buffer.append(entry)

            if len(self._buffer) >= self.buffer_size:
                await self._flush()

    async def _flush(self) -> None:
        """Flush buffered entries to file."""
        if not self._buffer:
            return

        entries_to_write = self._buffer.copy()
        self._buffer.clear()

        try:
            async with aiofiles.open(self.log_path, "a") as f:
                for entry in entries_to_write:
                    await f.write(entry.model_dump_json() + "\n")
        except OSError as e:
            logger.error("Failed to write audit log", error=str(e))
            # Keep entries for the next flush
            self._buffer[:0] = entries_to_write

    async def flush(self) -> None:
        """Write all buffered entries."""
        async with self._lock:
            await self._flush()

    @property
    def pending(self) -> int:
        return len(self._buffer)

