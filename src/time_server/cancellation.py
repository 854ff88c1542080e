"""Hierarchical cancellation scopes.

A scope is a node in a tree rooted at the server's shutdown signal.
Cancelling a scope cancels every descendant; ancestors and siblings are
never affected. Suspending handlers race their timers against
``on_cancel()`` so shutdown reaches them while they sleep.
"""

import asyncio
import itertools
from typing import Optional

from shared.errors import OperationCancelledError
from shared.logging import get_logger

logger = get_logger(__name__)

_scope_ids = itertools.count(1)


class CancellationScope:
    """
    A node in the cancellation tree.

    Scopes are cheap; one is created per session and one per in-flight
    request. All methods must be called from the event loop thread.
    """

    def __init__(
        self,
        parent: Optional["CancellationScope"] = None,
        name: str = ""
    ) -> None:
        self.id = next(_scope_ids)
        self.name = name or f"scope-{self.id}"
        self._parent = parent
        self._children: set["CancellationScope"] = set()
        self._event = asyncio.Event()

    def __repr__(self) -> str:
        state = "cancelled" if self.is_cancelled() else "active"
        return f"<CancellationScope {self.name} {state}>"

    @property
    def parent(self) -> Optional["CancellationScope"]:
        return self._parent

    @property
    def children(self) -> frozenset["CancellationScope"]:
        return frozenset(self._children)

    def child(self, name: str = "") -> "CancellationScope":
        """
        Derive a new descendant scope.

        A child of an already cancelled scope is born cancelled.
        """
        scope = CancellationScope(parent=self, name=name)
        if self.is_cancelled():
            scope._event.set()
        else:
            self._children.add(scope)
        return scope

    def cancel(self) -> None:
        """Cancel this scope and every descendant. Idempotent."""
        if self._event.is_set():
            return
        self._event.set()
        children = list(self._children)
        self._children.clear()
        for child in children:
            child.cancel()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def on_cancel(self) -> None:
        """Resolve once the scope has been cancelled."""
        await self._event.wait()

    def detach(self) -> None:
        """Remove this scope from its parent once its owner is done."""
        if self._parent is not None:
            self._parent._children.discard(self)

    async def sleep(self, seconds: float) -> None:
        """
        Suspend for ``seconds`` unless the scope is cancelled first.

        Raises:
            OperationCancelledError: If cancellation fired before the timer
            OverflowError: If ``seconds`` is too large for the event loop clock
        """
        if self.is_cancelled():
            raise OperationCancelledError()

        timer = asyncio.ensure_future(asyncio.sleep(seconds))
        cancelled = asyncio.ensure_future(self.on_cancel())
        try:
            await asyncio.wait(
                {timer, cancelled},
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (timer, cancelled):
                if not task.done():
                    task.cancel()

        if not timer.done() or timer.cancelled():
            raise OperationCancelledError()
        # Surface timer failures such as OverflowError for huge delays
        timer.result()


class CancellationController:
    """
    Owner of the process-wide root scope.

    Holds no business logic: it creates the root, cancels it on shutdown,
    and starts a fresh generation when the server is served again.
    """

    def __init__(self) -> None:
        self.generation = 0
        self._root = CancellationScope(name="root-0")
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def root(self) -> CancellationScope:
        return self._root

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop that owns the scopes for ``request_shutdown``."""
        self._loop = loop

    def shutdown(self) -> None:
        """Cancel the root scope, reaching every session and request."""
        if self._root.is_cancelled():
            return
        logger.info("Cancelling root scope", generation=self.generation)
        self._root.cancel()

    def request_shutdown(self) -> None:
        """Thread-safe variant of ``shutdown`` for signal handlers."""
        if self._loop is None or self._loop.is_closed():
            self.shutdown()
            return
        self._loop.call_soon_threadsafe(self.shutdown)

    def reset(self) -> CancellationScope:
        """Start a new lifetime generation with a fresh root."""
        self._root.cancel()
        self.generation += 1
        self._root = CancellationScope(name=f"root-{self.generation}")
        return self._root
