"""MCP Client - talks to the time server over streamable HTTP."""

from mcp_client.client import (
    MCPClient,
    MCPClientError,
    MCPConnectionError,
    MCPSessionError,
    MCPToolError,
)

__all__ = [
    "MCPClient",
    "MCPClientError",
    "MCPConnectionError",
    "MCPSessionError",
    "MCPToolError",
]
