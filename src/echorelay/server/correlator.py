"""Request correlator: turns public HTTP calls into tunnel round-trips.

Each proxied request gets a fresh request id and a future in the owning
session's pending table. The laptop answers with an ``http_response`` frame
carrying the same id. Exactly one outcome reaches the caller: the response,
a timeout, or a disconnect.
"""

from __future__ import annotations

import asyncio
import json
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from aiohttp import web

from echorelay.observability.metrics import PENDING_REQUESTS
from echorelay.protocol.messages import HttpRequestFrame, HttpResponseFrame
from echorelay.server.errors import (
    GatewayTimeoutError,
    InvalidRequestError,
    TunnelConnectionError,
    TunnelNotFoundError,
)
from echorelay.server.registry import PendingRequest, TunnelRegistry, TunnelSession

logger = structlog.get_logger()

REQUEST_ID_BYTES = 8

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "content-length",
    }
)

_SLASHES = re.compile(r"/{2,}")


def normalize_path(tail: str) -> str:
    """Path forwarded to the laptop: leading ``/``, repeated slashes collapsed."""
    return _SLASHES.sub("/", "/" + tail)


def filter_headers(headers: Any) -> dict[str, str]:
    return {key: value for key, value in headers.items() if key.lower() not in HOP_BY_HOP_HEADERS}


@dataclass
class ProxiedRequest:
    """The parts of a public HTTP request that travel through the tunnel."""

    method: str
    path: str
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    query: dict[str, str] = field(default_factory=dict)

    @classmethod
    async def from_request(cls, request: web.Request, tail: str) -> ProxiedRequest:
        """Build from an aiohttp request whose path remainder is ``tail``.

        JSON bodies are parsed; other non-empty bodies are forwarded as text.

        Raises:
            InvalidRequestError: If a JSON content type carries malformed JSON.
        """
        body: Any = None
        if request.can_read_body:
            raw = await request.read()
            if raw:
                text = raw.decode("utf-8", errors="replace")
                content_type = request.content_type or ""
                if content_type == "application/json" or content_type.endswith("+json"):
                    try:
                        body = json.loads(text)
                    except json.JSONDecodeError as e:
                        raise InvalidRequestError(f"Invalid JSON body: {e.msg}") from e
                else:
                    body = text

        return cls(
            method=request.method,
            path=normalize_path(tail),
            headers=filter_headers(request.headers),
            body=body,
            query=dict(request.query),
        )


class RequestCorrelator:
    """Matches proxied requests with the laptop's responses."""

    def __init__(self, registry: TunnelRegistry, request_timeout: float = 30.0) -> None:
        self._registry = registry
        self._request_timeout = request_timeout

    @property
    def request_timeout(self) -> float:
        return self._request_timeout

    async def proxy(
        self,
        tunnel_id: str,
        request: ProxiedRequest,
        timeout: float | None = None,
    ) -> HttpResponseFrame:
        """Forward ``request`` to the laptop and wait for its answer.

        Raises:
            TunnelNotFoundError: No live session for ``tunnel_id``.
            TunnelConnectionError: The request frame could not be written.
            GatewayTimeoutError: No response within the deadline.
            TunnelDisconnectedError: The session went away while waiting.
        """
        session = self._registry.get(tunnel_id)
        if session is None or session.closed:
            raise TunnelNotFoundError(tunnel_id)

        timeout = timeout if timeout is not None else self._request_timeout
        request_id = self._new_request_id(session)
        future: asyncio.Future[HttpResponseFrame] = asyncio.get_running_loop().create_future()
        session.pending[request_id] = PendingRequest(
            request_id=request_id,
            future=future,
            method=request.method,
            path=request.path,
            deadline=time.monotonic() + timeout,
        )
        PENDING_REQUESTS.inc()

        try:
            frame = HttpRequestFrame(
                request_id=request_id,
                method=request.method,
                path=request.path,
                headers=request.headers,
                body=request.body,
                query=request.query,
            )
            try:
                await session.send(frame)
            except ConnectionError as e:
                logger.warning(
                    "Failed to forward request to tunnel",
                    tunnel_id=tunnel_id,
                    request_id=request_id,
                    error=str(e),
                )
                raise TunnelConnectionError(f"Failed to forward request to laptop: {e}") from e

            session.request_count += 1
            session.last_activity_at = time.time()

            try:
                return await asyncio.wait_for(future, timeout=timeout)
            except TimeoutError as e:
                logger.warning(
                    "Request timeout",
                    tunnel_id=tunnel_id,
                    request_id=request_id,
                    method=request.method,
                    path=request.path,
                )
                raise GatewayTimeoutError(request_id, timeout) from e
        finally:
            session.pending.pop(request_id, None)
            PENDING_REQUESTS.dec()

    def resolve(self, session: TunnelSession, response: HttpResponseFrame) -> bool:
        """Complete the pending request named by ``response``; late or duplicate answers are ignored."""
        pending = session.pending.get(response.request_id)
        if pending is None or not pending.resolve(response):
            logger.debug(
                "Dropping response for unknown or finished request",
                tunnel_id=session.tunnel_id,
                request_id=response.request_id,
            )
            return False
        return True

    def pending_count(self, tunnel_id: str | None = None) -> int:
        if tunnel_id is not None:
            session = self._registry.get(tunnel_id)
            return len(session.pending) if session else 0
        return sum(len(session.pending) for session in self._registry.sessions())

    @staticmethod
    def _new_request_id(session: TunnelSession) -> str:
        request_id = secrets.token_hex(REQUEST_ID_BYTES)
        while request_id in session.pending:
            request_id = secrets.token_hex(REQUEST_ID_BYTES)
        return request_id
