"""Base class for tool implementations.

A tool:
- Declares its name, description, and parameter schema
- Receives validated parameters plus the request's cancellation scope
- Returns content blocks, or raises a ToolError subclass
- Holds no per-session state
"""

from abc import ABC, abstractmethod
from typing import Any

from shared.models import ContentBlock, TextContent, ToolDescriptor
from time_server.cancellation import CancellationScope
from time_server.registry import HandlerResult, ToolRegistry


class BaseTool(ABC):
    """
    Base class for tools.

    Instances are callables matching the registry's handler signature,
    so ``registry.register(tool.descriptor, tool)`` wires them in.
    """

    name: str = ""
    description: str = ""

    @property
    @abstractmethod
    def parameter_schema(self) -> dict[str, Any]:
        """JSON Schema for the tool's parameters."""

    @property
    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameter_schema=self.parameter_schema,
        )

    @abstractmethod
    def __call__(self, params: dict[str, Any], scope: CancellationScope) -> HandlerResult:
        """
        Execute the tool.

        Args:
            params: Parameters already validated against the schema,
                with defaults applied
            scope: Cancellation scope of the request

        Returns:
            Content blocks, or an awaitable resolving to them
        """

    def register(self, registry: ToolRegistry) -> None:
        registry.register(self.descriptor, self)

    @staticmethod
    def _text(text: str) -> list[ContentBlock]:
        return [TextContent(text=text)]
