"""MCP Client for the time server.

Speaks the streamable HTTP transport: initializes a session, lists
tools, calls them, and terminates the session on close.
"""

import itertools
import json
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from shared.logging import get_logger

logger = get_logger(__name__)

CLIENT_PROTOCOL_VERSION = "2025-06-18"
SESSION_HEADER = "Mcp-Session-Id"


class MCPClientError(Exception):
    """Base exception for MCP Client errors."""
    pass


class MCPConnectionError(MCPClientError):
    """Connection to the server failed."""
    pass


class MCPSessionError(MCPClientError):
    """The session is missing, unknown, or already closed."""
    pass


class MCPToolError(MCPClientError):
    """A JSON-RPC error returned by the server."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @property
    def kind(self) -> Optional[str]:
        """Server-side error kind, e.g. ``invalid_params``."""
        if isinstance(self.data, dict):
            return self.data.get("kind")
        return None


def _decode_body(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON or single-event SSE response body."""
    content_type = response.headers.get("content-type", "")
    if content_type.startswith("text/event-stream"):
        for line in response.text.splitlines():
            if line.startswith("data:"):
                return json.loads(line[len("data:"):].strip())
        raise MCPClientError("Empty event stream")
    return response.json()


class MCPClient:
    """
    Client for one session on the time server.

    Use as an async context manager:

        async with MCPClient("http://127.0.0.1:8000/mcp") as client:
            await client.call_tool("get_time", {"timezone": "UTC"})
    """

    def __init__(
        self,
        endpoint_url: str = "http://127.0.0.1:8000/mcp",
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        """
        Initialize MCP Client.

        Args:
            endpoint_url: Full URL of the MCP endpoint
            timeout: Request timeout in seconds
            http_client: Pre-configured client (tests pass an ASGI transport)
        """
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self._client = http_client
        self._owns_client = http_client is None
        self._ids = itertools.count(1)

        self.session_id: Optional[str] = None
        self.server_info: dict[str, Any] = {}

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self.session_id:
            headers[SESSION_HEADER] = self.session_id
        return headers

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        try:
            return await client.post(self.endpoint_url, json=payload, headers=self._headers())
        except httpx.ConnectError as e:
            raise MCPConnectionError(f"Cannot connect to MCP server: {e}")

    async def _request(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        if self.session_id is None:
            raise MCPSessionError("Session not initialized")

        payload: dict[str, Any] = {"jsonrpc": "2.0", "id": next(self._ids), "method": method}
        if params is not None:
            payload["params"] = params

        response = await self._post(payload)
        if response.status_code == 404:
            raise MCPSessionError(f"Session {self.session_id} not found")

        body = _decode_body(response)
        if "error" in body:
            error = body["error"]
            raise MCPToolError(error["code"], error["message"], error.get("data"))
        return body["result"]

    async def notify(self, method: str, params: Optional[dict[str, Any]] = None) -> None:
        """Send a notification; no response is expected."""
        payload: dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            payload["params"] = params
        response = await self._post(payload)
        if response.status_code == 404:
            raise MCPSessionError(f"Session {self.session_id} not found")

    @retry(
        retry=retry_if_exception_type(MCPConnectionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True
    )
    async def initialize(self, client_name: str = "mcp-time-client") -> dict[str, Any]:
        """
        Open a session.

        Returns:
            The server's ``initialize`` result

        Raises:
            MCPConnectionError: If the server is unreachable after retries
        """
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "initialize",
            "params": {
                "protocolVersion": CLIENT_PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": client_name, "version": "0.1.0"},
            },
        }
        response = await self._post(payload)
        response.raise_for_status()

        self.session_id = response.headers.get(SESSION_HEADER)
        self.server_info = _decode_body(response)["result"]
        await self.notify("notifications/initialized")

        logger.debug("Session initialized", session_id=self.session_id)
        return self.server_info

    async def list_tools(self) -> list[dict[str, Any]]:
        """List tools advertised by the server."""
        result = await self._request("tools/list")
        return result.get("tools", [])

    async def call_tool(self, name: str, arguments: Optional[dict[str, Any]] = None) -> str:
        """
        Call a tool and return its text content.

        Raises:
            MCPToolError: If the server returns an error
        """
        result = await self._request("tools/call", {"name": name, "arguments": arguments or {}})
        return "\n".join(
            block["text"] for block in result.get("content", []) if block.get("type") == "text"
        )

    async def ping(self) -> None:
        await self._request("ping")

    async def close(self) -> None:
        """Terminate the session and close the HTTP client."""
        if self.session_id is not None:
            client = await self._get_client()
            try:
                await client.delete(self.endpoint_url, headers=self._headers())
            except httpx.HTTPError as e:
                logger.warning("Failed to terminate session", error=str(e))
            self.session_id = None

        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "MCPClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
