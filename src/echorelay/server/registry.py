"""Tunnel registry: the single source of truth for which laptops are connected.

At most one live session exists per tunnel id. A new connection for an id
that is already registered replaces the old session, and the old socket is
closed. Everything that hangs off a session (pending proxied requests,
stream subscriptions) is torn down when the session is evicted.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

import structlog
from aiohttp import WSCloseCode, web

from echorelay.observability.metrics import ACTIVE_TUNNELS, TUNNEL_CONNECTIONS, TUNNEL_FRAMES
from echorelay.protocol.messages import Frame, encode_message
from echorelay.server.errors import TunnelDisconnectedError, TunnelError

logger = structlog.get_logger()

EvictionListener = Callable[[str], Awaitable[None]]


@dataclass
class PendingRequest:
    """A proxied HTTP request waiting for the laptop's ``http_response``."""

    request_id: str
    future: asyncio.Future[Any]
    method: str = "GET"
    path: str = "/"
    created_at: float = field(default_factory=time.monotonic)
    deadline: float = 0.0

    def resolve(self, value: Any) -> bool:
        if self.future.done():
            return False
        self.future.set_result(value)
        return True

    def fail(self, exc: BaseException) -> bool:
        if self.future.done():
            return False
        self.future.set_exception(exc)
        return True


@dataclass
class TunnelSession:
    """One live laptop connection."""

    tunnel_id: str
    client_auth_key: str
    websocket: web.WebSocketResponse
    name: str = "Laptop"
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    last_pong_at: float = field(default_factory=time.monotonic)
    pending: dict[str, PendingRequest] = field(default_factory=dict)
    request_count: int = 0
    frames_received: int = 0

    @property
    def closed(self) -> bool:
        return self.websocket.closed

    async def send(self, frame: Frame) -> None:
        """Write one frame to the laptop as a JSON text message."""
        await self.websocket.send_str(encode_message(frame))
        TUNNEL_FRAMES.labels(direction="out", type=getattr(frame, "type", "unknown")).inc()

    def fail_pending(self, exc: TunnelError) -> int:
        failed = 0
        for pending in list(self.pending.values()):
            if pending.fail(exc):
                failed += 1
        self.pending.clear()
        return failed


class TunnelStore(ABC):
    """Storage for live sessions keyed by tunnel id."""

    @abstractmethod
    def get(self, tunnel_id: str) -> TunnelSession | None: ...

    @abstractmethod
    def put(self, session: TunnelSession) -> None: ...

    @abstractmethod
    def pop(self, tunnel_id: str) -> TunnelSession | None: ...

    @abstractmethod
    def values(self) -> list[TunnelSession]: ...

    @abstractmethod
    def __len__(self) -> int: ...


class InMemoryTunnelStore(TunnelStore):
    def __init__(self) -> None:
        self._sessions: dict[str, TunnelSession] = {}

    def get(self, tunnel_id: str) -> TunnelSession | None:
        return self._sessions.get(tunnel_id)

    def put(self, session: TunnelSession) -> None:
        self._sessions[session.tunnel_id] = session

    def pop(self, tunnel_id: str) -> TunnelSession | None:
        return self._sessions.pop(tunnel_id, None)

    def values(self) -> list[TunnelSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)


class TunnelRegistry:
    """Tracks live tunnel sessions and cascades their teardown."""

    def __init__(self, store: TunnelStore | None = None) -> None:
        self._store = store if store is not None else InMemoryTunnelStore()
        self._eviction_listeners: list[EvictionListener] = []
        self._closing_tasks: set[asyncio.Task] = set()

    def add_eviction_listener(self, listener: EvictionListener) -> None:
        """Call ``listener(tunnel_id)`` after a session is unregistered."""
        self._eviction_listeners.append(listener)

    async def register(
        self,
        tunnel_id: str,
        client_auth_key: str,
        websocket: web.WebSocketResponse,
        name: str = "Laptop",
    ) -> TunnelSession:
        """Register a connected laptop, replacing any existing session for the id.

        The replaced session's pending requests fail with 502 and its socket is
        closed in the background. Stream subscriptions are kept: they belong to
        the tunnel id, not to one connection.
        """
        previous = self._store.get(tunnel_id)
        session = TunnelSession(
            tunnel_id=tunnel_id,
            client_auth_key=client_auth_key,
            websocket=websocket,
            name=name,
        )
        self._store.put(session)
        ACTIVE_TUNNELS.set(len(self._store))
        TUNNEL_CONNECTIONS.labels(outcome="accepted").inc()

        if previous is not None and previous.websocket is not websocket:
            TUNNEL_CONNECTIONS.labels(outcome="superseded").inc()
            failed = previous.fail_pending(
                TunnelDisconnectedError(tunnel_id, "Superseded by new connection")
            )
            logger.info(
                "Tunnel superseded by new connection",
                tunnel_id=tunnel_id,
                failed_requests=failed,
            )
            self._close_in_background(
                previous.websocket, WSCloseCode.OK, "Superseded by new connection"
            )

        logger.info("Tunnel registered", tunnel_id=tunnel_id, name=name, active=len(self._store))
        return session

    async def unregister(
        self,
        tunnel_id: str,
        session: TunnelSession | None = None,
        reason: str = "Tunnel disconnected",
    ) -> bool:
        """Evict the session for ``tunnel_id``.

        When ``session`` is given, eviction only happens if it is still the
        current session for the id. Returns whether anything was evicted.
        """
        current = self._store.get(tunnel_id)
        if current is None:
            return False
        if session is not None and current is not session:
            logger.debug("Ignoring unregister of superseded session", tunnel_id=tunnel_id)
            return False

        self._store.pop(tunnel_id)
        ACTIVE_TUNNELS.set(len(self._store))
        failed = current.fail_pending(TunnelDisconnectedError(tunnel_id, reason))

        for listener in list(self._eviction_listeners):
            try:
                await listener(tunnel_id)
            except Exception as e:
                logger.error("Eviction listener failed", tunnel_id=tunnel_id, error=str(e))

        logger.info(
            "Tunnel unregistered",
            tunnel_id=tunnel_id,
            reason=reason,
            failed_requests=failed,
            active=len(self._store),
        )
        return True

    def get(self, tunnel_id: str) -> TunnelSession | None:
        return self._store.get(tunnel_id)

    def size(self) -> int:
        return len(self._store)

    def sessions(self) -> Iterator[TunnelSession]:
        return iter(self._store.values())

    def set_client_auth_key(self, session: TunnelSession, key: str) -> bool:
        """Replace the key mobile clients must present; only for the current session."""
        if self._store.get(session.tunnel_id) is not session:
            return False
        session.client_auth_key = key
        return True

    def touch_pong(self, session: TunnelSession) -> None:
        session.last_pong_at = time.monotonic()

    async def close_all(self) -> None:
        """Evict every session and close its socket (shutdown)."""
        for session in self._store.values():
            await self.unregister(session.tunnel_id, session, reason="Relay shutting down")
            with contextlib.suppress(Exception):
                await session.websocket.close(
                    code=WSCloseCode.GOING_AWAY, message=b"Relay shutting down"
                )

        if self._closing_tasks:
            await asyncio.gather(*self._closing_tasks, return_exceptions=True)

    def _close_in_background(
        self, websocket: web.WebSocketResponse, code: int, message: str
    ) -> None:
        task = asyncio.create_task(self._close_websocket(websocket, code, message))
        self._closing_tasks.add(task)
        task.add_done_callback(self._closing_tasks.discard)

    @staticmethod
    async def _close_websocket(websocket: web.WebSocketResponse, code: int, message: str) -> None:
        try:
            await websocket.close(code=code, message=message.encode())
        except Exception as e:
            logger.debug("Closing replaced tunnel socket failed", error=str(e))
