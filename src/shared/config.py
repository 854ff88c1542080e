"""Configuration management for the time server.

Supports a YAML configuration file, a ``.env`` file, and environment
variable overrides. Configuration is loaded once and cached.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_BIND_ADDRESS = "127.0.0.1:8000"


def parse_bind_address(address: str) -> tuple[str, int]:
    """
    Split a ``host:port`` string.

    IPv6 hosts are written in brackets, e.g. ``[::1]:8000``.

    Raises:
        ValueError: If the address has no port or the port is out of range
    """
    host, sep, port_text = address.strip().rpartition(":")
    if not sep or not host:
        raise ValueError(f"Bind address '{address}' must be in host:port form")

    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise ValueError(f"IPv6 bind address '{address}' must use [host]:port")

    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid port in bind address '{address}'") from None

    if not 0 <= port <= 65535:
        raise ValueError(f"Port {port} out of range in bind address '{address}'")

    return host, port


class ServerSettings(BaseSettings):
    """HTTP transport and session configuration."""
    endpoint_path: str = Field(default="/mcp")
    drain_seconds: float = Field(default=5.0, ge=0)
    json_response: bool = Field(
        default=False,
        description="Always answer with application/json instead of SSE"
    )

    # Sessions
    session_idle_ttl_seconds: Optional[float] = Field(default=None, gt=0)
    session_sweep_seconds: float = Field(default=60.0, gt=0)

    # Audit
    enable_audit: bool = Field(default=True)
    audit_log_path: str = Field(default="logs/audit.log")

    model_config = SettingsConfigDict(
        env_prefix="MCP_SERVER_",
        env_file=".env",
        extra="ignore"
    )


class ClockSettings(BaseSettings):
    """Clock domain configuration."""
    default_timezone: str = Field(default="Asia/Shanghai")
    time_format: str = Field(default="%Y-%m-%d %H:%M:%S %Z")

    model_config = SettingsConfigDict(
        env_prefix="MCP_CLOCK_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    bind_address: str = Field(
        default=DEFAULT_BIND_ADDRESS,
        validation_alias=AliasChoices("BIND_ADDRESS", "MCP_BIND_ADDRESS", "bind_address"),
    )

    # Component settings
    server: ServerSettings = Field(default_factory=ServerSettings)
    clock: ClockSettings = Field(default_factory=ClockSettings)

    model_config = SettingsConfigDict(
        env_prefix="MCP_",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("bind_address")
    @classmethod
    def _check_bind_address(cls, value: str) -> str:
        parse_bind_address(value)
        return value.strip()

    @property
    def host(self) -> str:
        return parse_bind_address(self.bind_address)[0]

    @property
    def port(self) -> int:
        return parse_bind_address(self.bind_address)[1]

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        return cls(**load_yaml_config(path))


def load_yaml_config(path: str | Path) -> dict[str, Any]:
    """Load a YAML configuration file."""
    path = Path(path)
    if not path.exists():
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("MCP_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
