"""Configuration types with environment variable support.

Tuning settings can be configured via environment variables with the ECHORELAY_ prefix.
Example: ECHORELAY_WS_MAX_SIZE=33554432 raises the tunnel frame limit to 32MB.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class ServerConfig(BaseModel):
    """Relay server configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    public_host: str = "localhost"
    public_protocol: Literal["http", "https"] = "http"
    registration_api_key: str = Field(
        default="",
        repr=False,
        description="Deployment-wide secret required to create or restore tunnels.",
    )
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds a proxied request waits for the laptop before 504.",
    )
    ping_interval: float = Field(
        default=20.0,
        gt=0,
        description="Interval in seconds between WebSocket pings to each laptop.",
    )
    pong_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds without a pong before a tunnel is treated as dead.",
    )
    sse_heartbeat_interval: float = Field(
        default=15.0,
        gt=0,
        description="Interval in seconds between SSE heartbeat comments.",
    )
    ws_close_timeout: float = Field(
        default=5.0,
        description="WebSocket close handshake timeout (seconds).",
    )
    proxy_auth_required: bool = Field(
        default=True,
        description="Require X-Laptop-Auth-Key on proxied API calls.",
    )
    cors_allow_origin: str = Field(
        default="*",
        description="Value of Access-Control-Allow-Origin on public responses.",
    )
    credential_ttl: float = Field(
        default=86_400.0,
        gt=0,
        description="Seconds issued credentials are kept if no laptop ever connects with them.",
    )
    max_credentials: int = Field(
        default=10_000,
        gt=0,
        description="Issued credentials kept in memory; the oldest are dropped beyond this.",
    )

    @property
    def ws_protocol(self) -> str:
        return "wss" if self.public_protocol == "https" else "ws"

    @property
    def host_for_url(self) -> str:
        """Host (and port, where needed) used in advertised URLs."""
        if ":" in self.public_host or self.public_protocol == "https":
            return self.public_host
        if self.port == 80:
            return self.public_host
        return f"{self.public_host}:{self.port}"

    @property
    def base_url(self) -> str:
        return f"{self.public_protocol}://{self.host_for_url}"

    def public_url(self, tunnel_id: str) -> str:
        return f"{self.base_url}/api/{tunnel_id}"

    def ws_url(self, tunnel_id: str) -> str:
        return f"{self.ws_protocol}://{self.host_for_url}/tunnel/{tunnel_id}"


class PerformanceConfig(BaseSettings):
    """Performance tuning configuration.

    All settings can be overridden via environment variables:
    - ECHORELAY_WS_MAX_SIZE: Maximum tunnel WebSocket frame size (bytes)
    - ECHORELAY_HTTP_MAX_BODY_SIZE: Maximum proxied request body (bytes)
    - ECHORELAY_LOG_FRAME_PREVIEW: Characters of a malformed frame kept in logs
    """

    model_config = SettingsConfigDict(
        env_prefix="ECHORELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ws_max_size: int = Field(
        default=16 * 1024 * 1024,
        description="WebSocket maximum message size (bytes). Default 16MB.",
    )
    http_max_body_size: int = Field(
        default=10 * 1024 * 1024,
        description="Maximum HTTP body size (bytes). Default 10MB.",
    )
    log_frame_preview: int = Field(
        default=500,
        ge=0,
        description="Characters of an unparseable frame included in the log entry.",
    )


class EchoRelayConfig(BaseSettings):
    """Master configuration combining the environment-driven settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.performance.ws_max_size)
    """

    model_config = SettingsConfigDict(
        env_prefix="ECHORELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def performance(self) -> PerformanceConfig:
        """Get performance configuration."""
        return PerformanceConfig()

    def to_env_dict(self) -> dict[str, str]:
        """Export current configuration as environment variable dictionary."""
        perf = self.performance
        return {
            "ECHORELAY_WS_MAX_SIZE": str(perf.ws_max_size),
            "ECHORELAY_HTTP_MAX_BODY_SIZE": str(perf.http_max_body_size),
            "ECHORELAY_LOG_FRAME_PREVIEW": str(perf.log_frame_preview),
        }


_config: EchoRelayConfig | None = None


def get_config() -> EchoRelayConfig:
    """Get the global configuration instance.

    Returns a cached instance of EchoRelayConfig that reads from environment variables.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = EchoRelayConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None
