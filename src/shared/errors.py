"""Exception hierarchy for the time server.

Every application exception inherits from TimeServerError, which carries
an error code that maps onto an ErrorKind at the dispatcher boundary.
"""

from typing import Any, Optional


class TimeServerError(Exception):
    """Base exception for all time server errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ToolError(TimeServerError):
    """Errors raised by tool handlers."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "INTERNAL_ERROR",
        data: Optional[Any] = None
    ) -> None:
        super().__init__(message, code=code)
        self.data = data


class InvalidParamsError(ToolError):
    """Tool parameters failed schema or domain validation.

    ``data`` echoes the offending raw value so the caller can display it.
    """

    def __init__(self, message: str, data: Optional[Any] = None) -> None:
        super().__init__(message, code="INVALID_PARAMS", data=data)


class OperationCancelledError(ToolError):
    """A suspended operation was aborted by its cancellation scope."""

    def __init__(
        self,
        message: str = "Operation cancelled",
        data: Optional[Any] = None
    ) -> None:
        super().__init__(message, code="OPERATION_CANCELLED", data=data)


class SessionError(TimeServerError):
    """Errors in session management."""

    def __init__(self, message: str, *, code: str = "SESSION_ERROR") -> None:
        super().__init__(message, code=code)


class TransportError(TimeServerError):
    """Connection-level failures."""

    def __init__(self, message: str, *, code: str = "TRANSPORT_FAULT") -> None:
        super().__init__(message, code=code)


class BindError(TransportError):
    """The listening socket could not be bound."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="BIND_FAILED")
