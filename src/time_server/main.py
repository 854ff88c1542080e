"""Time Server - FastAPI Application.

Exposes the MCP streamable HTTP endpoint: one path accepting POSTed
JSON-RPC messages, answered as JSON or as a single-event SSE stream,
plus DELETE to end a session.
"""

import asyncio
import json
import sys
from contextlib import asynccontextmanager, suppress
from typing import Any, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from shared.clock import Clock
from shared.config import Settings, get_settings
from shared.errors import BindError
from shared.logging import bind_context, clear_context, get_logger, setup_logging
from shared.models import ErrorKind
from time_server import __version__
from time_server.audit import AuditLogger
from time_server.cancellation import CancellationController
from time_server.dispatcher import RequestDispatcher
from time_server.protocol import (
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    PARSE_ERROR,
    SESSION_NOT_FOUND,
    JSONRPCError,
    JsonRpcMessage,
    MCPProtocol,
    error_response,
    parse_message,
)
from time_server.registry import ToolRegistry
from time_server.sessions import Session, SessionManager

from domains import load_all_domains

logger = get_logger(__name__)

SESSION_HEADER = "Mcp-Session-Id"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    protocol_version: str
    tools: list[str]
    session_count: int


def build_registry(settings: Settings, clock: Optional[Clock] = None) -> ToolRegistry:
    """Create the frozen tool registry for this process."""
    registry = ToolRegistry()
    load_all_domains(registry, settings, clock)
    return registry


async def _sweep_idle_sessions(sessions: SessionManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        pruned = await sessions.prune_idle()
        if pruned:
            logger.info("Pruned idle sessions", count=pruned)


def create_app(
    settings: Optional[Settings] = None,
    *,
    registry: Optional[ToolRegistry] = None,
    sessions: Optional[SessionManager] = None,
    controller: Optional[CancellationController] = None,
    audit_logger: Optional[AuditLogger] = None,
    clock: Optional[Clock] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Components not supplied are created from ``settings``.
    """
    settings = settings or get_settings()
    if controller is None:
        controller = sessions.controller if sessions is not None else CancellationController()
    if registry is None:
        registry = build_registry(settings, clock)
    if sessions is None:
        sessions = SessionManager(
            controller, idle_ttl_seconds=settings.server.session_idle_ttl_seconds
        )
    if audit_logger is None:
        audit_logger = AuditLogger(
            log_path=settings.server.audit_log_path,
            enabled=settings.server.enable_audit,
        )
    dispatcher = RequestDispatcher(registry, audit_logger=audit_logger)
    protocol = MCPProtocol(registry, sessions, dispatcher, server_version=__version__)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        controller.bind_loop(asyncio.get_running_loop())
        sweeper = None
        if sessions.idle_ttl is not None:
            sweeper = asyncio.create_task(
                _sweep_idle_sessions(sessions, settings.server.session_sweep_seconds)
            )

        logger.info(
            "Time server started",
            tools=registry.names(),
            endpoint=settings.server.endpoint_path,
        )

        yield

        logger.info("Shutting down time server")
        if sweeper is not None:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
        controller.shutdown()
        closed = await sessions.close_all()
        await audit_logger.flush()
        logger.info("Time server stopped", sessions_closed=closed)

    app = FastAPI(
        title="MCP Time Server",
        description="MCP tool server for time lookup and timed waits",
        version=__version__,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.sessions = sessions
    app.state.controller = controller
    app.state.protocol = protocol

    endpoint = settings.server.endpoint_path

    @app.post(endpoint, tags=["MCP"])
    async def post_message(request: Request) -> Response:
        """
        Receive one JSON-RPC message.

        ``initialize`` opens a session; every other message must carry
        the session id returned by it.
        """
        try:
            payload = await request.json()
        except ValueError:
            return _error(status.HTTP_400_BAD_REQUEST, None, PARSE_ERROR, "Parse error")

        try:
            message = parse_message(payload)
        except JSONRPCError as e:
            request_id = payload.get("id") if isinstance(payload, dict) else None
            return _error(status.HTTP_400_BAD_REQUEST, request_id, e.code, e.message, e.data)

        if message.method == "initialize":
            if message.is_notification:
                return _error(
                    status.HTTP_400_BAD_REQUEST, None, INVALID_REQUEST,
                    "initialize must be a request"
                )
            session, result = await protocol.initialize(message)
            body = {"jsonrpc": "2.0", "id": message.id, "result": result}
            return _reply(request, body, session, settings.server.json_response)

        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return _error(
                status.HTTP_400_BAD_REQUEST, message.id, INVALID_REQUEST,
                f"Bad Request: missing {SESSION_HEADER} header"
            )

        session = await sessions.touch(session_id)
        if session is None:
            return _error(
                status.HTTP_404_NOT_FOUND, message.id, SESSION_NOT_FOUND,
                "Session not found"
            )

        bind_context(session_id=session.id)
        try:
            if message.is_notification:
                await protocol.handle_notification(session, message)
                return Response(status_code=status.HTTP_202_ACCEPTED)

            if _wants_sse(request, settings.server.json_response):
                return _stream(protocol, session, message)

            body = await protocol.respond(session, message)
            return JSONResponse(body, headers={SESSION_HEADER: session.id})
        finally:
            clear_context()

    @app.get(endpoint, tags=["MCP"])
    async def open_stream() -> Response:
        """Server-initiated streams are not offered."""
        return Response(
            status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
            headers={"Allow": "POST, DELETE"},
        )

    @app.delete(endpoint, tags=["MCP"])
    async def terminate_session(request: Request) -> Response:
        """End a session, cancelling its in-flight requests."""
        session_id = request.headers.get(SESSION_HEADER)
        if not session_id:
            return _error(
                status.HTTP_400_BAD_REQUEST, None, INVALID_REQUEST,
                f"Bad Request: missing {SESSION_HEADER} header"
            )
        if not await sessions.close_session(session_id):
            return _error(
                status.HTTP_404_NOT_FOUND, None, SESSION_NOT_FOUND, "Session not found"
            )
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check() -> HealthResponse:
        """Health check endpoint."""
        return HealthResponse(
            status="shutting_down" if controller.root().is_cancelled() else "healthy",
            version=__version__,
            protocol_version=LATEST_PROTOCOL_VERSION,
            tools=registry.names(),
            session_count=await sessions.count(),
        )

    return app


def _error(
    status_code: int,
    request_id: Any,
    code: int,
    message: str,
    data: Any = None
) -> JSONResponse:
    return JSONResponse(
        error_response(request_id, code, message, data),
        status_code=status_code,
    )


def _wants_sse(request: Request, json_only: bool) -> bool:
    if json_only:
        return False
    return "text/event-stream" in request.headers.get("accept", "")


def _sse_event(body: dict[str, Any]) -> str:
    return f"event: message\ndata: {json.dumps(body)}\n\n"


def _reply(request: Request, body: dict[str, Any], session: Session, json_only: bool) -> Response:
    headers = {SESSION_HEADER: session.id}
    if _wants_sse(request, json_only):
        return StreamingResponse(
            iter([_sse_event(body)]),
            media_type="text/event-stream",
            headers=headers,
        )
    return JSONResponse(body, headers=headers)


def _stream(protocol: MCPProtocol, session: Session, message: JsonRpcMessage) -> StreamingResponse:
    """
    Answer a request with a single-event SSE stream.

    If the client goes away before the response is written, only that
    request's scope is cancelled.
    """
    async def events():
        task = asyncio.ensure_future(protocol.respond(session, message))
        try:
            body = await asyncio.shield(task)
            yield _sse_event(body)
        finally:
            if not task.done():
                session.cancel_request(str(message.id))
                logger.warning(
                    "Client disconnected before response",
                    session_id=session.id,
                    request_id=str(message.id),
                    kind=ErrorKind.TRANSPORT_FAULT.value,
                )
                with suppress(asyncio.CancelledError):
                    await task

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={SESSION_HEADER: session.id},
    )


def main() -> int:
    """Run the time server until interrupted."""
    from time_server.transport import serve

    settings = get_settings()
    setup_logging(settings.log_level, json_output=settings.environment == "production")

    controller = CancellationController()
    registry = build_registry(settings)
    sessions = SessionManager(
        controller, idle_ttl_seconds=settings.server.session_idle_ttl_seconds
    )

    try:
        asyncio.run(serve(settings.bind_address, registry, sessions, controller, settings))
    except BindError as e:
        logger.error("Cannot start time server", error=e.message)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
