"""Tool Registry for the time server.

Holds the catalog of callable tools and their handlers. Tools are
registered at startup, after which the registry is frozen and read
concurrently by every session without locking.
"""

from typing import Any, Awaitable, Callable, Optional, Union

from shared.logging import get_logger
from shared.models import ContentBlock, ToolDescriptor
from time_server.cancellation import CancellationScope

logger = get_logger(__name__)


HandlerResult = Union[list[ContentBlock], Awaitable[list[ContentBlock]]]

# Handlers receive validated parameters and the request's cancellation scope.
ToolHandler = Callable[[dict[str, Any], CancellationScope], HandlerResult]


class ToolRegistry:
    """
    Central registry for all tools.

    Responsibilities:
    - Register (descriptor, handler) pairs
    - Look up tools by name
    - List descriptors for capability negotiation
    """

    def __init__(self) -> None:
        self._tools: dict[str, tuple[ToolDescriptor, ToolHandler]] = {}
        self._frozen = False

    def register(self, descriptor: ToolDescriptor, handler: ToolHandler) -> None:
        """
        Register a tool in the registry.

        Args:
            descriptor: Tool descriptor to register
            handler: Callable executing the tool

        Raises:
            ValueError: If the tool name is already registered
            RuntimeError: If the registry has been frozen
        """
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{descriptor.name}': registry is frozen"
            )

        if descriptor.name in self._tools:
            raise ValueError(f"Tool '{descriptor.name}' is already registered")

        self._tools[descriptor.name] = (descriptor, handler)

        logger.info("Tool registered", tool=descriptor.name)

    def freeze(self) -> None:
        """Make the registry read-only."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, name: str) -> Optional[tuple[ToolDescriptor, ToolHandler]]:
        """
        Get a tool and its handler by name.

        Returns:
            (descriptor, handler) if found, None otherwise
        """
        return self._tools.get(name)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        """Get a tool descriptor by name."""
        entry = self._tools.get(name)
        return entry[0] if entry else None

    def list_tools(self) -> list[ToolDescriptor]:
        """List all registered descriptors in registration order."""
        return [descriptor for descriptor, _ in self._tools.values()]

    def names(self) -> list[str]:
        return list(self._tools)

    def get_tools_for_mcp(self) -> list[dict[str, Any]]:
        """Tool definitions formatted for the ``tools/list`` result."""
        return [descriptor.to_mcp() for descriptor in self.list_tools()]

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
