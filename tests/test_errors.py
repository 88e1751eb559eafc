"""Tests for the relay error taxonomy."""

from __future__ import annotations

import pytest

from echorelay.server.errors import (
    GatewayTimeoutError,
    InvalidRequestError,
    TunnelAuthError,
    TunnelConnectionError,
    TunnelDisconnectedError,
    TunnelError,
    TunnelNotFoundError,
)


class TestErrorMapping:
    """Each error carries a stable code and HTTP status."""

    @pytest.mark.parametrize(
        ("error", "code", "status"),
        [
            (TunnelNotFoundError("abc"), "TUNNEL_NOT_FOUND", 404),
            (TunnelAuthError(), "TUNNEL_AUTH_ERROR", 401),
            (InvalidRequestError("bad"), "INVALID_REQUEST", 400),
            (GatewayTimeoutError("req", 30.0), "GATEWAY_TIMEOUT", 504),
            (TunnelDisconnectedError("abc"), "TUNNEL_DISCONNECTED", 502),
            (TunnelConnectionError("down"), "TUNNEL_CONNECTION_ERROR", 503),
        ],
    )
    def test_code_and_status(self, error: TunnelError, code: str, status: int) -> None:
        assert isinstance(error, TunnelError)
        assert error.code == code
        assert error.status == status
        assert error.to_dict() == {"error": code, "message": error.message}

    def test_not_found_message_names_tunnel(self) -> None:
        error = TunnelNotFoundError("abc123")
        assert error.message == "Tunnel not found: abc123"
        assert error.tunnel_id == "abc123"

    def test_timeout_message(self) -> None:
        error = GatewayTimeoutError("req-1", 30.0)
        assert error.message == "No response from laptop within 30s"
        assert error.request_id == "req-1"

    def test_disconnected_custom_reason(self) -> None:
        error = TunnelDisconnectedError("abc", "Superseded by new connection")
        assert str(error) == "Superseded by new connection"
