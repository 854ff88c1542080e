"""Session Manager for the time server.

Tracks live client sessions. Each session owns a child of the root
cancellation scope, and each in-flight request owns a child of its
session's scope.
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from shared.errors import SessionError
from shared.logging import get_logger
from shared.models import SessionState, utcnow
from time_server.cancellation import CancellationController, CancellationScope

logger = get_logger(__name__)


class Session(BaseModel):
    """
    A client session.

    Lifecycle: open -> (request/response cycles) -> closing -> closed.
    There is no transition back from closed.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    created_at: datetime = Field(default_factory=utcnow)
    last_active_at: datetime = Field(default_factory=utcnow)
    cancellation_scope: CancellationScope
    state: SessionState = SessionState.OPEN

    protocol_version: Optional[str] = None
    client_info: dict[str, Any] = Field(default_factory=dict)
    initialized: bool = False

    _in_flight: dict[str, CancellationScope] = PrivateAttr(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.state == SessionState.OPEN

    @property
    def in_flight(self) -> list[str]:
        """Request ids currently being served."""
        return list(self._in_flight)

    @asynccontextmanager
    async def request_scope(self, request_id: str) -> AsyncIterator[CancellationScope]:
        """
        Derive a cancellation scope for one in-flight request.

        The scope is registered under ``request_id`` so the client can
        cancel it, and detached from the session scope on exit.

        Raises:
            SessionError: If ``request_id`` is already in flight
        """
        if request_id in self._in_flight:
            raise SessionError(
                f"Request id {request_id} is already in flight",
                code="DUPLICATE_REQUEST",
            )
        scope = self.cancellation_scope.child(name=f"request-{request_id}")
        self._in_flight[request_id] = scope
        try:
            yield scope
        finally:
            self._in_flight.pop(request_id, None)
            scope.detach()

    def cancel_request(self, request_id: str) -> bool:
        """
        Cancel one in-flight request.

        Returns:
            True if the request was in flight, False otherwise
        """
        scope = self._in_flight.get(request_id)
        if scope is None:
            return False
        scope.cancel()
        return True


class SessionManager:
    """
    Manages live client sessions.

    Responsibilities:
    - Open sessions with a fresh child scope of the current root
    - Close sessions, cancelling everything they have in flight
    - Look sessions up by id
    - Prune idle sessions
    """

    def __init__(
        self,
        controller: CancellationController,
        idle_ttl_seconds: Optional[float] = None
    ) -> None:
        """
        Initialize the session manager.

        Args:
            controller: Owner of the root cancellation scope
            idle_ttl_seconds: Close sessions idle for longer than this
        """
        self.controller = controller
        self.idle_ttl = (
            timedelta(seconds=idle_ttl_seconds) if idle_ttl_seconds else None
        )

        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def open_session(
        self,
        protocol_version: Optional[str] = None,
        client_info: Optional[dict[str, Any]] = None
    ) -> Session:
        """
        Create a new session.

        Returns:
            The new session, already registered in the live set
        """
        session_id = uuid.uuid4().hex
        scope = self.controller.root().child(name=f"session-{session_id}")

        session = Session(
            id=session_id,
            cancellation_scope=scope,
            protocol_version=protocol_version,
            client_info=client_info or {},
        )

        async with self._lock:
            self._sessions[session_id] = session

        logger.info(
            "Session opened",
            session_id=session_id,
            protocol_version=protocol_version,
            client=session.client_info.get("name"),
        )

        return session

    async def get(self, session_id: str) -> Optional[Session]:
        """
        Get a live session by id.

        Returns:
            Session if open, None otherwise
        """
        async with self._lock:
            session = self._sessions.get(session_id)

        if session is None or not session.is_open:
            return None

        return session

    async def touch(self, session_id: str) -> Optional[Session]:
        """Look up a session and record activity on it."""
        session = await self.get(session_id)
        if session is not None:
            session.last_active_at = utcnow()
        return session

    async def close_session(self, session_id: str, reason: str = "client") -> bool:
        """
        Close a session and cancel its scope.

        Returns:
            True if the session was closed, False if it was not live
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return False
            session.state = SessionState.CLOSING

        in_flight = len(session.in_flight)
        session.cancellation_scope.cancel()
        session.cancellation_scope.detach()
        session.state = SessionState.CLOSED

        logger.info(
            "Session closed",
            session_id=session_id,
            reason=reason,
            cancelled_requests=in_flight,
        )
        return True

    async def close_all(self, reason: str = "shutdown") -> int:
        """Close every live session. Returns the number closed."""
        async with self._lock:
            session_ids = list(self._sessions)

        closed = 0
        for session_id in session_ids:
            if await self.close_session(session_id, reason=reason):
                closed += 1
        return closed

    async def prune_idle(self, now: Optional[datetime] = None) -> int:
        """
        Close sessions idle for longer than the TTL.

        Sessions with requests in flight are never pruned.
        """
        if self.idle_ttl is None:
            return 0

        now = now or utcnow()
        async with self._lock:
            expired = [
                s.id for s in self._sessions.values()
                if not s.in_flight and now - s.last_active_at > self.idle_ttl
            ]

        for session_id in expired:
            await self.close_session(session_id, reason="idle")
        return len(expired)

    async def count(self) -> int:
        async with self._lock:
            return len(self._sessions)

    async def list_ids(self) -> list[str]:
        async with self._lock:
            return list(self._sessions)
