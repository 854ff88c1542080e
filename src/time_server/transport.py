"""HTTP transport server.

Binds the listening socket, serves the application with uvicorn, and
drives graceful shutdown: on SIGINT/SIGTERM the server stops accepting
connections and cancels the root scope at once, so suspended handlers
resolve as cancelled within the drain period.
"""

import asyncio
import contextlib
import socket
from typing import Optional

import uvicorn

from shared.config import Settings, get_settings, parse_bind_address
from shared.errors import BindError
from shared.logging import get_logger
from time_server.cancellation import CancellationController
from time_server.registry import ToolRegistry
from time_server.sessions import SessionManager

logger = get_logger(__name__)


class GracefulServer(uvicorn.Server):
    """uvicorn server that cancels the root scope on the exit signal."""

    def __init__(self, config: uvicorn.Config, controller: CancellationController) -> None:
        super().__init__(config)
        self.controller = controller

    def handle_exit(self, sig, frame) -> None:
        if not self.should_exit:
            logger.info("Shutdown signal received", signal=sig)
        self.controller.request_shutdown()
        super().handle_exit(sig, frame)

    @contextlib.contextmanager
    def capture_signals(self):
        """
        Install the exit handlers without re-raising the signal afterwards.

        SIGINT and SIGTERM both end in a drained, clean exit, so the
        process reports success instead of dying from the re-raised signal.
        """
        with super().capture_signals():
            try:
                yield
            finally:
                self._captured_signals.clear()


def bind_socket(host: str, port: int) -> socket.socket:
    """
    Bind and listen on ``host:port``.

    Raises:
        BindError: If the address cannot be bound
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        sock = socket.create_server((host, port), family=family)
    except OSError as e:
        raise BindError(f"Cannot bind {host}:{port}: {e.strerror or e}") from e
    sock.setblocking(False)
    return sock


async def serve(
    bind_address: str,
    registry: ToolRegistry,
    sessions: SessionManager,
    controller: CancellationController,
    settings: Optional[Settings] = None
) -> None:
    """
    Serve the MCP endpoint until a shutdown signal arrives.

    Args:
        bind_address: ``host:port`` to listen on
        registry: Frozen tool registry
        sessions: Live session set
        controller: Owner of the root (shutdown) scope
        settings: Application settings

    Raises:
        BindError: If the listening socket cannot be bound
    """
    from time_server.main import create_app

    settings = settings or get_settings()
    host, port = parse_bind_address(bind_address)
    sock = bind_socket(host, port)

    controller.bind_loop(asyncio.get_running_loop())
    app = create_app(settings, registry=registry, sessions=sessions, controller=controller)

    config = uvicorn.Config(
        app,
        log_level=settings.log_level.lower(),
        timeout_graceful_shutdown=settings.server.drain_seconds,
        lifespan="on",
        log_config=None,
    )
    server = GracefulServer(config, controller)

    logger.info("Time server listening", bind_address=bind_address)
    try:
        await server.serve(sockets=[sock])
    finally:
        controller.shutdown()
        sock.close()
