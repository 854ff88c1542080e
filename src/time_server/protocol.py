"""MCP protocol handling over JSON-RPC 2.0.

Parses inbound messages, negotiates the protocol version at
``initialize``, and maps the MCP method table onto the registry,
the session manager, and the dispatcher.
"""

from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ValidationError

from shared.errors import SessionError
from shared.logging import get_logger
from shared.models import ToolRequest, ToolResponse
from time_server.dispatcher import RequestDispatcher
from time_server.registry import ToolRegistry
from time_server.sessions import Session, SessionManager

logger = get_logger(__name__)


# Newest first
SUPPORTED_PROTOCOL_VERSIONS = ("2025-06-18", "2025-03-26", "2024-11-05")
LATEST_PROTOCOL_VERSION = SUPPORTED_PROTOCOL_VERSIONS[0]

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
SESSION_NOT_FOUND = -32001


class JSONRPCError(Exception):
    """A JSON-RPC level failure, rendered as an error envelope."""

    def __init__(self, code: int, message: str, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


class JsonRpcMessage(BaseModel):
    """Inbound JSON-RPC 2.0 request or notification."""
    jsonrpc: Literal["2.0"]
    method: str
    params: Optional[dict[str, Any]] = None
    id: Optional[Union[int, str]] = None

    @property
    def is_notification(self) -> bool:
        return "id" not in self.model_fields_set


class JsonRpcErrorObj(BaseModel):
    code: int
    message: str
    data: Optional[Any] = None


def parse_message(payload: Any) -> JsonRpcMessage:
    """
    Validate a decoded JSON body as a JSON-RPC message.

    Raises:
        JSONRPCError: If the payload is not a single valid message
    """
    if isinstance(payload, list):
        raise JSONRPCError(INVALID_REQUEST, "Batch requests are not supported")
    if not isinstance(payload, dict):
        raise JSONRPCError(INVALID_REQUEST, "Invalid Request: expected an object")
    try:
        return JsonRpcMessage.model_validate(payload)
    except ValidationError as e:
        raise JSONRPCError(
            INVALID_REQUEST,
            "Invalid Request",
            data=[err["msg"] for err in e.errors()],
        ) from None


def success_response(request_id: Optional[Union[int, str]], result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def error_response(
    request_id: Optional[Union[int, str]],
    code: int,
    message: str,
    data: Any = None
) -> dict[str, Any]:
    error = JsonRpcErrorObj(code=code, message=message, data=data)
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "error": error.model_dump(exclude_none=True),
    }


def negotiate_version(requested: Optional[str]) -> str:
    """Echo the client's version when supported, else offer the latest."""
    if requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


def tool_response_to_result(response: ToolResponse) -> dict[str, Any]:
    """
    Convert a ToolResponse to a ``tools/call`` result.

    Raises:
        JSONRPCError: For failures, carrying the error kind in ``data``
    """
    if response.success:
        return {
            "content": [block.model_dump() for block in response.content],
            "isError": False,
        }

    failure = response.error
    data: dict[str, Any] = {"kind": failure.code.value}
    if isinstance(failure.data, dict):
        data.update(failure.data)
    elif failure.data is not None:
        data["detail"] = failure.data
    raise JSONRPCError(failure.code.jsonrpc_code, failure.message, data)


class MCPProtocol:
    """
    The MCP method table.

    Supported methods: ``initialize``, ``ping``, ``tools/list``,
    ``tools/call``; notifications ``notifications/initialized`` and
    ``notifications/cancelled``.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        sessions: SessionManager,
        dispatcher: RequestDispatcher,
        server_name: str = "mcp-time-server",
        server_version: str = "0.1.0"
    ) -> None:
        self.registry = registry
        self.sessions = sessions
        self.dispatcher = dispatcher
        self.server_name = server_name
        self.server_version = server_version

    def instructions(self) -> str:
        """Human-readable summary of the available tools."""
        lines = ["This MCP server provides time-related tools.", "Tools:"]
        lines.extend(
            f"- {tool.name}: {tool.description}" for tool in self.registry.list_tools()
        )
        return "\n".join(lines)

    def server_info(self, protocol_version: str) -> dict[str, Any]:
        return {
            "protocolVersion": protocol_version,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": {"name": self.server_name, "version": self.server_version},
            "instructions": self.instructions(),
        }

    async def initialize(self, message: JsonRpcMessage) -> tuple[Session, dict[str, Any]]:
        """Open a session for an ``initialize`` request."""
        params = message.params or {}
        version = negotiate_version(params.get("protocolVersion"))
        client_info = params.get("clientInfo")

        session = await self.sessions.open_session(
            protocol_version=version,
            client_info=client_info if isinstance(client_info, dict) else None,
        )
        return session, self.server_info(version)

    async def respond(self, session: Session, message: JsonRpcMessage) -> dict[str, Any]:
        """Handle a request and build its response envelope."""
        try:
            result = await self.handle_request(session, message)
        except JSONRPCError as e:
            return error_response(message.id, e.code, e.message, e.data)
        return success_response(message.id, result)

    async def handle_request(self, session: Session, message: JsonRpcMessage) -> Any:
        """
        Dispatch one request to its method.

        Raises:
            JSONRPCError: For unknown methods and malformed parameters
        """
        method = message.method
        params = message.params or {}

        if method == "ping":
            return {}

        if method == "tools/list":
            return {"tools": self.registry.get_tools_for_mcp()}

        if method == "tools/call":
            return await self._call_tool(session, message.id, params)

        if method == "initialize":
            raise JSONRPCError(INVALID_REQUEST, "Session is already initialized")

        raise JSONRPCError(METHOD_NOT_FOUND, f"Method not found: {method}")

    async def handle_notification(self, session: Session, message: JsonRpcMessage) -> None:
        """Handle a notification. Unknown notifications are ignored."""
        params = message.params or {}

        if message.method == "notifications/initialized":
            session.initialized = True
            return

        if message.method == "notifications/cancelled":
            request_id = params.get("requestId")
            if request_id is None:
                return
            cancelled = session.cancel_request(str(request_id))
            logger.info(
                "Cancellation requested",
                session_id=session.id,
                request_id=str(request_id),
                reason=params.get("reason"),
                in_flight=cancelled,
            )
            return

        logger.debug("Ignoring notification", method=message.method, session_id=session.id)

    async def _call_tool(
        self,
        session: Session,
        request_id: Union[int, str],
        params: dict[str, Any]
    ) -> dict[str, Any]:
        name = params.get("name")
        if not isinstance(name, str) or not name:
            raise JSONRPCError(INVALID_PARAMS, "Missing required parameter: name")

        arguments = params.get("arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise JSONRPCError(
                INVALID_PARAMS,
                "Tool arguments must be an object",
                data={"arguments": arguments},
            )

        request = ToolRequest(
            tool_name=name,
            params=arguments,
            session_id=session.id,
            request_id=str(request_id),
        )

        try:
            async with session.request_scope(request.request_id) as scope:
                response = await self.dispatcher.dispatch(request, scope)
        except SessionError as e:
            raise JSONRPCError(INVALID_REQUEST, e.message, data={"id": request_id}) from None

        return tool_response_to_result(response)
