"""Core."""

from .config import (
    EchoRelayConfig,
    PerformanceConfig,
    ServerConfig,
    clear_config,
    get_config,
)

__all__ = [
    "EchoRelayConfig",
    "PerformanceConfig",
    "ServerConfig",
    "clear_config",
    "get_config",
]
