"""Time Server - tool registry, dispatch, sessions, and cancellation.

Exposes time tools over the MCP streamable HTTP transport. The core
does not depend on the HTTP layer and can be used and tested on its own.
"""

__version__ = "0.1.0"

from time_server.cancellation import CancellationController, CancellationScope
from time_server.registry import ToolRegistry
from time_server.sessions import Session, SessionManager
from time_server.dispatcher import RequestDispatcher

__all__ = [
    "__version__",
    "CancellationController",
    "CancellationScope",
    "ToolRegistry",
    "Session",
    "SessionManager",
    "RequestDispatcher",
]
