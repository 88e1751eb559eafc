"""Typed relay errors and their HTTP mapping."""

from __future__ import annotations

from typing import Any


class TunnelError(Exception):
    """Base relay error carrying a stable code and an HTTP status."""

    code = "TUNNEL_ERROR"
    status = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message}


class TunnelNotFoundError(TunnelError):
    """No such tunnel, or registered but never connected."""

    code = "TUNNEL_NOT_FOUND"
    status = 404

    def __init__(self, tunnel_id: str) -> None:
        super().__init__(f"Tunnel not found: {tunnel_id}")
        self.tunnel_id = tunnel_id


class TunnelAuthError(TunnelError):
    code = "TUNNEL_AUTH_ERROR"
    status = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class InvalidRequestError(TunnelError):
    code = "INVALID_REQUEST"
    status = 400


class GatewayTimeoutError(TunnelError):
    """Proxied request unanswered within its deadline."""

    code = "GATEWAY_TIMEOUT"
    status = 504

    def __init__(self, request_id: str, timeout: float) -> None:
        super().__init__(f"No response from laptop within {timeout:g}s")
        self.request_id = request_id
        self.timeout = timeout


class TunnelDisconnectedError(TunnelError):
    """Tunnel went away while a request was in flight."""

    code = "TUNNEL_DISCONNECTED"
    status = 502

    def __init__(self, tunnel_id: str, reason: str = "Tunnel disconnected") -> None:
        super().__init__(reason)
        self.tunnel_id = tunnel_id


class TunnelConnectionError(TunnelError):
    """Frame could not be written to the tunnel."""

    code = "TUNNEL_CONNECTION_ERROR"
    status = 503
