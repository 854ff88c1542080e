"""Request Dispatcher for the time server.

Validates a single tool invocation and routes it to its handler.
Validation and domain errors are recovered here and returned as
structured failures; they never terminate the serving task.
"""

import asyncio
import inspect
import time
from typing import Any, Optional

from shared.errors import InvalidParamsError, OperationCancelledError, ToolError
from shared.logging import get_logger
from shared.models import ContentBlock, ErrorKind, TextContent, ToolRequest, ToolResponse
from shared.schema import apply_defaults, validate_schema
from time_server.audit import AuditLogger
from time_server.cancellation import CancellationScope
from time_server.registry import ToolHandler, ToolRegistry

logger = get_logger(__name__)


class RequestDispatcher:
    """
    Routes tool calls to their handlers.

    Responsibilities:
    - Resolve the tool by name
    - Validate parameters against the tool schema and apply defaults
    - Invoke the handler with the request's cancellation scope
    - Map the outcome to a ToolResponse
    - Audit every invocation
    """

    def __init__(
        self,
        registry: ToolRegistry,
        audit_logger: Optional[AuditLogger] = None
    ) -> None:
        self.registry = registry
        self.audit_logger = audit_logger

    async def dispatch(
        self,
        request: ToolRequest,
        scope: CancellationScope
    ) -> ToolResponse:
        """
        Execute a tool request.

        Args:
            request: Tool invocation
            scope: Cancellation scope derived from the request's session

        Returns:
            Success with content blocks, or a Failure
        """
        start_time = time.perf_counter()

        logger.debug(
            "Dispatching tool",
            tool=request.tool_name,
            session_id=request.session_id,
            request_id=request.request_id,
        )

        response = await self._dispatch(request, scope)

        if self.audit_logger is not None:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            await self.audit_logger.log(request, response, elapsed_ms)

        return response

    async def _dispatch(
        self,
        request: ToolRequest,
        scope: CancellationScope
    ) -> ToolResponse:
        tool_name = request.tool_name

        entry = self.registry.lookup(tool_name)
        if entry is None:
            return ToolResponse.failure(
                ErrorKind.TOOL_NOT_FOUND,
                f"Tool '{tool_name}' not found",
                data={"tool": tool_name},
            )
        descriptor, handler = entry

        is_valid, errors = validate_schema(request.params, descriptor.parameter_schema)
        if not is_valid:
            return ToolResponse.failure(
                ErrorKind.INVALID_PARAMS,
                f"Invalid parameters for '{tool_name}': {'; '.join(errors)}",
                data={"params": request.params, "errors": errors},
            )
        params = apply_defaults(request.params, descriptor.parameter_schema)

        try:
            blocks = await self._invoke(handler, params, scope)
        except InvalidParamsError as e:
            return ToolResponse.failure(ErrorKind.INVALID_PARAMS, e.message, e.data)
        except OperationCancelledError as e:
            logger.info(
                "Tool cancelled",
                tool=tool_name,
                session_id=request.session_id,
                request_id=request.request_id,
            )
            return ToolResponse.failure(ErrorKind.OPERATION_CANCELLED, e.message, e.data)
        except asyncio.CancelledError:
            raise
        except ToolError as e:
            return ToolResponse.failure(ErrorKind.INTERNAL_ERROR, e.message, e.data)
        except Exception as e:
            logger.error(
                "Tool execution failed",
                tool=tool_name,
                error=str(e),
                exc_info=True
            )
            return ToolResponse.failure(ErrorKind.INTERNAL_ERROR, str(e))

        return ToolResponse.ok(*blocks)

    async def _invoke(
        self,
        handler: ToolHandler,
        params: dict[str, Any],
        scope: CancellationScope
    ) -> list[ContentBlock]:
        """Call a handler, awaiting it when it suspends."""
        result = handler(params, scope)
        if inspect.isawaitable(result):
            result = await result

        # Normalize result
        if isinstance(result, str):
            return [TextContent(text=result)]
        if isinstance(result, TextContent):
            return [result]
        return list(result)
