"""Clock Domain - time lookup and timed wait tools.

get_time reads the current time in a timezone and never suspends.
wait suspends on a timer that races the request's cancellation scope,
so session close and server shutdown abort it early.
"""

from typing import Any, Optional

from shared.clock import (
    DEFAULT_TIME_FORMAT,
    Clock,
    UnknownTimezoneError,
    format_instant,
    resolve_zone,
)
from shared.config import ClockSettings
from shared.errors import InvalidParamsError, OperationCancelledError
from shared.logging import get_logger
from shared.models import ContentBlock
from shared.schema import object_schema
from domains.base import BaseTool
from time_server.cancellation import CancellationScope
from time_server.registry import ToolRegistry

logger = get_logger(__name__)


class GetTimeTool(BaseTool):
    """Current time in a named timezone."""

    name = "get_time"

    def __init__(
        self,
        clock: Clock,
        default_timezone: str = "Asia/Shanghai",
        time_format: str = DEFAULT_TIME_FORMAT
    ) -> None:
        # Fail at startup rather than on the first call without a timezone
        resolve_zone(default_timezone)
        self.clock = clock
        self.default_timezone = default_timezone
        self.time_format = time_format
        self.description = (
            "Get the current time in the given timezone. "
            f"Defaults to {default_timezone} when no timezone is given."
        )

    @property
    def parameter_schema(self) -> dict[str, Any]:
        return object_schema({
            "timezone": {
                "type": "string",
                "description": (
                    "IANA timezone name, e.g. \"Asia/Shanghai\" or "
                    f"\"America/New_York\". Defaults to \"{self.default_timezone}\"."
                ),
                "default": self.default_timezone,
            }
        })

    def __call__(self, params: dict[str, Any], scope: CancellationScope) -> list[ContentBlock]:
        name = params.get("timezone", self.default_timezone)
        try:
            zone = resolve_zone(name)
        except UnknownTimezoneError:
            raise InvalidParamsError(
                f"Invalid timezone: {name}",
                data={"timezone": name},
            ) from None

        now = self.clock.now(zone)
        return self._text(
            f"Current time ({name}): {format_instant(now, self.time_format)}"
        )


class WaitTool(BaseTool):
    """Suspend for a number of seconds and report the wait."""

    name = "wait"
    description = (
        "Wait for the given number of seconds, then return the start time, "
        "end time, and duration of the wait."
    )

    def __init__(
        self,
        clock: Clock,
        timezone: str = "Asia/Shanghai",
        time_format: str = DEFAULT_TIME_FORMAT
    ) -> None:
        self.clock = clock
        self.zone = resolve_zone(timezone)
        self.time_format = time_format

    @property
    def parameter_schema(self) -> dict[str, Any]:
        return object_schema(
            {
                "seconds": {
                    "type": "integer",
                    "minimum": 0,
                    "description": "Number of seconds to wait",
                }
            },
            required=["seconds"],
        )

    async def __call__(self, params: dict[str, Any], scope: CancellationScope) -> list[ContentBlock]:
        seconds = int(params["seconds"])
        start = self.clock.now(self.zone)

        try:
            await scope.sleep(seconds)
        except OperationCancelledError:
            elapsed = (self.clock.now(self.zone) - start).total_seconds()
            logger.info("Wait cancelled", seconds=seconds, elapsed=round(elapsed, 3))
            raise OperationCancelledError(
                f"Wait of {seconds} seconds was cancelled",
                data={"seconds": seconds, "elapsed": elapsed},
            ) from None
        except OverflowError:
            raise InvalidParamsError(
                f"Wait of {seconds} seconds is too long",
                data={"seconds": seconds},
            ) from None

        end = self.clock.now(self.zone)
        return self._text(
            f"Wait started: {format_instant(start, self.time_format)}\n"
            f"Wait ended: {format_instant(end, self.time_format)}\n"
            f"Duration: {seconds} seconds"
        )


def register_clock_domain(
    registry: ToolRegistry,
    settings: Optional[ClockSettings] = None,
    clock: Optional[Clock] = None
) -> None:
    """Register the clock tools."""
    settings = settings or ClockSettings()
    clock = clock or Clock()

    tools: list[BaseTool] = [
        GetTimeTool(clock, settings.default_timezone, settings.time_format),
        WaitTool(clock, settings.default_timezone, settings.time_format),
    ]
    for tool in tools:
        tool.register(registry)

    logger.info("Clock domain registered", tool_count=len(tools))
