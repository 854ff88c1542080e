"""Clock and timezone provider.

Resolves IANA zone identifiers and supplies the current instant in a zone.
Tools take a Clock so tests can substitute a frozen one.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_TIME_FORMAT = "%Y-%m-%d %H:%M:%S %Z"


class UnknownTimezoneError(ValueError):
    """The zone identifier does not resolve to a known timezone."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Invalid timezone: {name}")
        self.name = name


def resolve_zone(name: str) -> ZoneInfo:
    """
    Resolve an IANA zone identifier such as ``Asia/Shanghai``.

    Raises:
        UnknownTimezoneError: If the identifier is empty or unknown
    """
    if not name or not name.strip():
        raise UnknownTimezoneError(name)
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        # ValueError covers malformed keys such as absolute paths; OSError
        # covers directory names like "America" and over-long names
        raise UnknownTimezoneError(name) from None


class Clock:
    """Wall clock returning aware datetimes."""

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)

    def now(self, zone: ZoneInfo) -> datetime:
        """Current instant expressed in ``zone``."""
        return self.utcnow().astimezone(zone)


class FrozenClock(Clock):
    """Clock pinned to a fixed instant; ``advance`` moves it forward."""

    def __init__(self, instant: Optional[datetime] = None) -> None:
        self._instant = instant or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def utcnow(self) -> datetime:
        return self._instant

    def advance(self, seconds: float) -> None:
        self._instant += timedelta(seconds=seconds)


def format_instant(moment: datetime, fmt: str = DEFAULT_TIME_FORMAT) -> str:
    """Render ``moment`` with the fixed display pattern."""
    return moment.strftime(fmt)
