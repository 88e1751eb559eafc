"""Ping/pong liveness for tunnel sessions."""

from __future__ import annotations

import asyncio
import contextlib
import time

import structlog
from aiohttp import WSCloseCode

from echorelay.server.registry import TunnelRegistry, TunnelSession

logger = structlog.get_logger()


class HeartbeatMonitor:
    """Pings every watched session and evicts the ones that stop answering.

    Each session gets one task. Every ``ping_interval`` seconds the task checks
    how long ago the last pong arrived; past ``pong_timeout`` the session is
    unregistered and its socket closed with 1001, otherwise a ping is sent.
    """

    def __init__(
        self,
        registry: TunnelRegistry,
        ping_interval: float = 20.0,
        pong_timeout: float = 30.0,
    ) -> None:
        self._registry = registry
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self._tasks: dict[str, tuple[TunnelSession, asyncio.Task]] = {}

    def watch(self, session: TunnelSession) -> None:
        previous = self._tasks.pop(session.tunnel_id, None)
        if previous is not None:
            previous[1].cancel()
        task = asyncio.create_task(self._monitor(session))
        self._tasks[session.tunnel_id] = (session, task)

    async def unwatch(self, session: TunnelSession) -> None:
        entry = self._tasks.get(session.tunnel_id)
        if entry is None or entry[0] is not session:
            return
        del self._tasks[session.tunnel_id]
        task = entry[1]
        if task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def stop(self) -> None:
        tasks = [task for _, task in self._tasks.values()]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    @property
    def watched(self) -> int:
        return len(self._tasks)

    async def _monitor(self, session: TunnelSession) -> None:
        tunnel_id = session.tunnel_id
        while not session.closed:
            await asyncio.sleep(self.ping_interval)
            if session.closed:
                break

            silent_for = time.monotonic() - session.last_pong_at
            if silent_for > self.pong_timeout:
                logger.warning(
                    "Tunnel heartbeat timed out",
                    tunnel_id=tunnel_id,
                    silent_for=round(silent_for, 1),
                )
                await self._evict(session, "Heartbeat timeout")
                break

            try:
                await session.websocket.ping()
            except ConnectionError as e:
                logger.warning("Tunnel ping failed", tunnel_id=tunnel_id, error=str(e))
                await self._evict(session, "Ping failed")
                break

    async def _evict(self, session: TunnelSession, reason: str) -> None:
        entry = self._tasks.get(session.tunnel_id)
        if entry is not None and entry[0] is session:
            del self._tasks[session.tunnel_id]
        await self._registry.unregister(session.tunnel_id, session, reason=reason)
        with contextlib.suppress(ConnectionError):
            await session.websocket.close(code=WSCloseCode.GOING_AWAY, message=reason.encode())
