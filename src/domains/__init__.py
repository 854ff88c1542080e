"""Tool Domains.

Each domain contains its tool implementations and a ``register_*``
function that adds them to the registry at startup.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from shared.clock import Clock
    from shared.config import Settings
    from time_server.registry import ToolRegistry


def load_all_domains(
    registry: "ToolRegistry",
    settings: Optional["Settings"] = None,
    clock: Optional["Clock"] = None
) -> None:
    """
    Load and register all tool domains, then freeze the registry.

    This is called once at server startup.
    """
    from domains.clock import register_clock_domain

    register_clock_domain(registry, settings.clock if settings else None, clock)

    registry.freeze()


__all__ = ["load_all_domains"]
