"""Shared utilities and data models for the time server."""

from shared.models import (
    ErrorKind,
    TextContent,
    ToolDescriptor,
    ToolRequest,
    ToolResponse,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "ErrorKind",
    "TextContent",
    "ToolDescriptor",
    "ToolRequest",
    "ToolResponse",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
