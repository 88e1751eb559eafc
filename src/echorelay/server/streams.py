"""Stream fan-out: re-broadcasts tunnel events to every subscriber of a stream key.

Subscribers are Server-Sent-Events responses or client WebSockets. Delivery
is fire-and-forget: there is no backlog, so a late subscriber only sees
events broadcast after it subscribed. A subscriber whose write fails is
dropped without affecting the others.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import structlog
from aiohttp import WSCloseCode, web

from echorelay.observability.metrics import STREAM_SUBSCRIBERS
from echorelay.protocol.messages import StreamKind

logger = structlog.get_logger()

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

SSE_CONNECTED_COMMENT = b": connected\n\n"
SSE_HEARTBEAT_COMMENT = b":heartbeat\n\n"


@dataclass(frozen=True)
class StreamKey:
    """Identifies one group of subscribers: ``(tunnel, logical session, kind)``.

    An empty ``session_id`` addresses the tunnel-wide stream of that kind.
    """

    tunnel_id: str
    session_id: str
    kind: StreamKind

    def __str__(self) -> str:
        if not self.session_id:
            return f"{self.tunnel_id}:{self.kind}"
        return f"{self.tunnel_id}:{self.session_id}:{self.kind}"

    @classmethod
    def parse(cls, value: str) -> StreamKey | None:
        """Inverse of ``str()``; returns None for anything malformed."""
        parts = value.split(":")
        if len(parts) < 2 or not parts[0]:
            return None
        try:
            kind = StreamKind(parts[-1])
        except ValueError:
            return None
        session_id = ":".join(parts[1:-1])
        if len(parts) > 2 and not session_id:
            return None
        return cls(parts[0], session_id, kind)

    @classmethod
    def recording(cls, tunnel_id: str, session_id: str) -> StreamKey:
        return cls(tunnel_id, session_id, StreamKind.RECORDING)

    @classmethod
    def terminal(cls, tunnel_id: str, session_id: str) -> StreamKey:
        return cls(tunnel_id, session_id, StreamKind.TERMINAL)

    @classmethod
    def agent(cls, tunnel_id: str, session_id: str = "") -> StreamKey:
        return cls(tunnel_id, session_id, StreamKind.AGENT)


@dataclass(frozen=True)
class StreamEvent:
    """One event, serialized once and written to every subscriber."""

    data: str
    event: str | None = None

    @classmethod
    def from_payload(cls, payload: Any, event: str | None = None) -> StreamEvent:
        return cls(data=json.dumps(payload), event=event)

    def to_sse(self) -> bytes:
        lines = []
        if self.event:
            lines.append(f"event: {self.event}")
        lines.extend(f"data: {line}" for line in self.data.split("\n"))
        return ("\n".join(lines) + "\n\n").encode()


class Subscriber(ABC):
    """One open sink for stream events."""

    def __init__(self) -> None:
        self.closed = asyncio.Event()

    async def open(self) -> None:
        """Called once when the subscriber joins a stream."""

    @abstractmethod
    async def send(self, event: StreamEvent) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    async def wait_closed(self) -> None:
        await self.closed.wait()


class SSESubscriber(Subscriber):
    """Writes events to a prepared ``text/event-stream`` response.

    A heartbeat comment is written every ``heartbeat_interval`` seconds; a
    failed heartbeat write ends the subscription.
    """

    def __init__(self, response: web.StreamResponse, heartbeat_interval: float = 15.0) -> None:
        super().__init__()
        self.response = response
        self.heartbeat_interval = heartbeat_interval
        self._heartbeat_task: asyncio.Task | None = None

    async def open(self) -> None:
        await self.response.write(SSE_CONNECTED_COMMENT)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def send(self, event: StreamEvent) -> None:
        if self.closed.is_set():
            raise ConnectionResetError("SSE subscriber closed")
        await self.response.write(event.to_sse())

    async def close(self) -> None:
        self.closed.set()
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeat comments to keep the SSE connection alive.

        SSE comment lines start with ':' and are ignored by clients.
        """
        while not self.closed.is_set():
            try:
                await asyncio.wait_for(self.closed.wait(), timeout=self.heartbeat_interval)
                break
            except TimeoutError:
                pass

            try:
                await self.response.write(SSE_HEARTBEAT_COMMENT)
            except (ConnectionError, RuntimeError) as e:
                logger.debug("SSE heartbeat write failed", error=str(e))
                self.closed.set()
                break


class WebSocketSubscriber(Subscriber):
    """Forwards event payloads as text messages on a client WebSocket."""

    def __init__(self, websocket: web.WebSocketResponse) -> None:
        super().__init__()
        self.websocket = websocket

    async def send(self, event: StreamEvent) -> None:
        if self.websocket.closed:
            raise ConnectionResetError("WebSocket subscriber closed")
        await self.websocket.send_str(event.data)

    async def close(self) -> None:
        self.closed.set()
        if not self.websocket.closed:
            await self.websocket.close(code=WSCloseCode.GOING_AWAY, message=b"Stream closed")


class StreamFanout:
    """Per-stream-key subscriber sets."""

    def __init__(self) -> None:
        self._subscribers: dict[StreamKey, list[Subscriber]] = {}

    async def subscribe(self, key: StreamKey, subscriber: Subscriber) -> None:
        await subscriber.open()
        self._subscribers.setdefault(key, []).append(subscriber)
        STREAM_SUBSCRIBERS.labels(kind=str(key.kind)).inc()
        logger.info("Stream subscriber added", stream_key=str(key), count=self.subscriber_count(key))

    async def unsubscribe(self, key: StreamKey, subscriber: Subscriber) -> bool:
        subscribers = self._subscribers.get(key)
        if not subscribers or subscriber not in subscribers:
            return False

        subscribers.remove(subscriber)
        if not subscribers:
            del self._subscribers[key]
        STREAM_SUBSCRIBERS.labels(kind=str(key.kind)).dec()
        logger.info("Stream subscriber removed", stream_key=str(key), count=self.subscriber_count(key))
        return True

    async def broadcast(self, key: StreamKey, event: StreamEvent) -> int:
        """Write ``event`` to every subscriber of ``key``; returns how many received it."""
        subscribers = list(self._subscribers.get(key, ()))
        if not subscribers:
            return 0

        results = await asyncio.gather(
            *(subscriber.send(event) for subscriber in subscribers),
            return_exceptions=True,
        )

        delivered = 0
        for subscriber, result in zip(subscribers, results, strict=True):
            if isinstance(result, BaseException):
                logger.warning(
                    "Dropping failed stream subscriber",
                    stream_key=str(key),
                    error=str(result) or type(result).__name__,
                )
                await self.unsubscribe(key, subscriber)
                await self._close_subscriber(subscriber)
            else:
                delivered += 1

        logger.debug("Broadcast to stream", stream_key=str(key), delivered=delivered)
        return delivered

    async def close_tunnel(self, tunnel_id: str) -> int:
        """Close every subscription belonging to ``tunnel_id``."""
        keys = [key for key in self._subscribers if key.tunnel_id == tunnel_id]
        closed = 0
        for key in keys:
            for subscriber in list(self._subscribers.get(key, ())):
                await self.unsubscribe(key, subscriber)
                await self._close_subscriber(subscriber)
                closed += 1
        if closed:
            logger.info("Closed tunnel streams", tunnel_id=tunnel_id, subscribers=closed)
        return closed

    async def close_all(self) -> None:
        for tunnel_id in {key.tunnel_id for key in self._subscribers}:
            await self.close_tunnel(tunnel_id)

    def subscriber_count(self, key: StreamKey | None = None) -> int:
        if key is not None:
            return len(self._subscribers.get(key, ()))
        return sum(len(subscribers) for subscribers in self._subscribers.values())

    @staticmethod
    async def _close_subscriber(subscriber: Subscriber) -> None:
        try:
            await subscriber.close()
        except (ConnectionError, RuntimeError) as e:
            logger.debug("Error closing stream subscriber", error=str(e))
