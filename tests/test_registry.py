"""Tests for the tunnel registry and session teardown."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiohttp import WSCloseCode

from echorelay.protocol.messages import Connected
from echorelay.server.errors import TunnelDisconnectedError
from echorelay.server.registry import PendingRequest, TunnelRegistry, TunnelSession


def _websocket() -> MagicMock:
    ws = MagicMock()
    ws.closed = False
    ws.send_str = AsyncMock()
    ws.close = AsyncMock()
    ws.ping = AsyncMock()
    return ws


def _pending(session: TunnelSession, request_id: str) -> PendingRequest:
    pending = PendingRequest(request_id=request_id, future=asyncio.get_running_loop().create_future())
    session.pending[request_id] = pending
    return pending


class TestPendingRequest:
    @pytest.mark.asyncio
    async def test_resolve_once(self) -> None:
        pending = PendingRequest(request_id="r1", future=asyncio.get_running_loop().create_future())
        assert pending.resolve("first") is True
        assert pending.resolve("second") is False
        assert pending.fail(RuntimeError("late")) is False
        assert pending.future.result() == "first"


class TestTunnelSession:
    @pytest.mark.asyncio
    async def test_send_writes_json_text(self) -> None:
        ws = _websocket()
        session = TunnelSession(tunnel_id="t1", client_auth_key="k", websocket=ws)

        await session.send(Connected(tunnel_id="t1"))

        ws.send_str.assert_awaited_once()
        assert json.loads(ws.send_str.await_args.args[0]) == {"type": "connected", "tunnelId": "t1"}

    def test_closed_follows_websocket(self) -> None:
        ws = _websocket()
        session = TunnelSession(tunnel_id="t1", client_auth_key="k", websocket=ws)
        assert session.closed is False
        ws.closed = True
        assert session.closed is True


class TestTunnelRegistry:
    """Tests for registration, supersede and eviction."""

    @pytest.mark.asyncio
    async def test_register_and_get(self) -> None:
        registry = TunnelRegistry()
        ws = _websocket()

        session = await registry.register("t1", "key", ws, name="Work")

        assert registry.get("t1") is session
        assert registry.size() == 1
        assert session.name == "Work"
        assert session.client_auth_key == "key"
        assert list(registry.sessions()) == [session]

    @pytest.mark.asyncio
    async def test_get_unknown(self) -> None:
        assert TunnelRegistry().get("nope") is None

    @pytest.mark.asyncio
    async def test_supersede_replaces_session(self) -> None:
        """A second connection for the same id replaces and closes the first."""
        registry = TunnelRegistry()
        old_ws, new_ws = _websocket(), _websocket()
        old = await registry.register("t1", "k1", old_ws)
        pending = _pending(old, "r1")

        new = await registry.register("t1", "k2", new_ws)
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        assert registry.get("t1") is new
        assert registry.size() == 1
        assert pending.future.done()
        with pytest.raises(TunnelDisconnectedError, match="Superseded"):
            pending.future.result()
        old_ws.close.assert_awaited_once()
        assert old_ws.close.await_args.kwargs["code"] == WSCloseCode.OK
        new_ws.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_superseded_session_unregister_is_ignored(self) -> None:
        registry = TunnelRegistry()
        old = await registry.register("t1", "k1", _websocket())
        new = await registry.register("t1", "k2", _websocket())

        assert await registry.unregister("t1", old) is False
        assert registry.get("t1") is new

    @pytest.mark.asyncio
    async def test_unregister_fails_pending_and_notifies(self) -> None:
        registry = TunnelRegistry()
        evicted: list[str] = []

        async def listener(tunnel_id: str) -> None:
            evicted.append(tunnel_id)

        registry.add_eviction_listener(listener)
        session = await registry.register("t1", "k", _websocket())
        pending = _pending(session, "r1")

        assert await registry.unregister("t1", session) is True

        assert registry.get("t1") is None
        assert evicted == ["t1"]
        assert session.pending == {}
        with pytest.raises(TunnelDisconnectedError):
            pending.future.result()

    @pytest.mark.asyncio
    async def test_unregister_unknown(self) -> None:
        assert await TunnelRegistry().unregister("nope") is False

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self) -> None:
        registry = TunnelRegistry()
        broken = AsyncMock(side_effect=RuntimeError("boom"))
        healthy = AsyncMock()
        registry.add_eviction_listener(broken)
        registry.add_eviction_listener(healthy)
        await registry.register("t1", "k", _websocket())

        assert await registry.unregister("t1") is True

        healthy.assert_awaited_once_with("t1")

    @pytest.mark.asyncio
    async def test_set_client_auth_key(self) -> None:
        registry = TunnelRegistry()
        session = await registry.register("t1", "issued", _websocket())

        assert registry.set_client_auth_key(session, "chosen") is True
        assert session.client_auth_key == "chosen"

    @pytest.mark.asyncio
    async def test_replaced_session_cannot_set_client_auth_key(self) -> None:
        registry = TunnelRegistry()
        old = await registry.register("t1", "issued", _websocket())
        new = await registry.register("t1", "issued-again", _websocket())

        assert registry.set_client_auth_key(old, "stale") is False
        assert new.client_auth_key == "issued-again"

    @pytest.mark.asyncio
    async def test_touch_pong(self) -> None:
        registry = TunnelRegistry()
        session = await registry.register("t1", "k", _websocket())
        session.last_pong_at = 0.0

        registry.touch_pong(session)

        assert session.last_pong_at > 0.0

    @pytest.mark.asyncio
    async def test_close_all(self) -> None:
        registry = TunnelRegistry()
        ws1, ws2 = _websocket(), _websocket()
        await registry.register("t1", "k", ws1)
        await registry.register("t2", "k", ws2)

        await registry.close_all()

        assert registry.size() == 0
        for ws in (ws1, ws2):
            ws.close.assert_awaited_once()
            assert ws.close.await_args.kwargs["code"] == WSCloseCode.GOING_AWAY
