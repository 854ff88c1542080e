"""Core data models for the time server.

This module defines the shared data structures that flow between the
registry, the dispatcher, the session layer, and the HTTP transport.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Current instant as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class ErrorKind(str, Enum):
    """Enumerated failure kinds surfaced to clients."""
    TOOL_NOT_FOUND = "tool_not_found"
    INVALID_PARAMS = "invalid_params"
    OPERATION_CANCELLED = "operation_cancelled"
    TRANSPORT_FAULT = "transport_fault"
    INTERNAL_ERROR = "internal_error"

    @property
    def jsonrpc_code(self) -> int:
        """JSON-RPC error code used on the wire for this kind."""
        return _JSONRPC_CODES[self]


_JSONRPC_CODES = {
    ErrorKind.TOOL_NOT_FOUND: -32602,
    ErrorKind.INVALID_PARAMS: -32602,
    ErrorKind.OPERATION_CANCELLED: -32800,
    ErrorKind.TRANSPORT_FAULT: -32603,
    ErrorKind.INTERNAL_ERROR: -32603,
}


class ToolDescriptor(BaseModel):
    """
    Catalog entry for a callable tool.

    Descriptors are created at startup and never mutated afterwards.
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique tool name")
    description: str = Field(..., description="Human-readable description")
    parameter_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}},
        description="JSON Schema for parameter validation"
    )

    def to_mcp(self) -> dict[str, Any]:
        """Render the descriptor the way ``tools/list`` advertises it."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.parameter_schema,
        }


class ToolRequest(BaseModel):
    """A single inbound tool invocation, consumed once by the dispatcher."""
    tool_name: str
    params: dict[str, Any] = Field(default_factory=dict)
    session_id: str
    request_id: str


class TextContent(BaseModel):
    """Plain text content block."""
    type: Literal["text"] = "text"
    text: str


# Widen to a discriminated union on ``type`` when more block kinds exist.
ContentBlock = TextContent


class ToolFailure(BaseModel):
    """Structured error payload of a failed invocation."""
    code: ErrorKind
    message: str
    data: Optional[Any] = None


class ToolResponse(BaseModel):
    """
    Outcome of a tool invocation.

    Either ``success`` with one or more content blocks, or a failure
    carrying an ErrorKind and an optional structured payload.
    """
    success: bool
    content: list[ContentBlock] = Field(default_factory=list)
    error: Optional[ToolFailure] = None

    @classmethod
    def ok(cls, *blocks: TextContent) -> "ToolResponse":
        return cls(success=True, content=list(blocks))

    @classmethod
    def text(cls, text: str) -> "ToolResponse":
        return cls.ok(TextContent(text=text))

    @classmethod
    def failure(
        cls,
        kind: ErrorKind,
        message: str,
        data: Optional[Any] = None
    ) -> "ToolResponse":
        return cls(
            success=False,
            error=ToolFailure(code=kind, message=message, data=data)
        )


class SessionState(str, Enum):
    """Lifecycle of a client session."""
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class AuditEntry(BaseModel):
    """
    Audit log entry for a tool invocation.

    Captures the session, tool, parameters, timing, and outcome.
    """
    id: str
    timestamp: datetime = Field(default_factory=utcnow)

    session_id: str
    request_id: str
    tool_name: str
    parameters: dict[str, Any] = Field(default_factory=dict)

    success: bool
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    execution_time_ms: float = 0
