"""Relay server: tunnel WebSocket endpoint plus the public HTTP/SSE surface."""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
import time
import traceback
from collections.abc import Awaitable, Callable
from functools import partial

import structlog
from aiohttp import WSCloseCode, WSMsgType, web
from pydantic import ValidationError

from echorelay.core.config import ServerConfig, get_config
from echorelay.observability.metrics import (
    ACTIVE_TUNNELS,
    HTTP_REQUESTS,
    PENDING_REQUESTS,
    REQUEST_DURATION,
    TUNNEL_CONNECTIONS,
    TUNNEL_FRAMES,
    bucket_status,
    generate_metrics,
    get_content_type,
)
from echorelay.protocol.messages import (
    AgentEvent,
    AgentRequest,
    AgentResponse,
    ClientAuthKey,
    Connected,
    Frame,
    HttpResponseFrame,
    RecordingOutput,
    StreamKind,
    TerminalInput,
    TerminalOutput,
    TTSReady,
    TunnelCreateRequest,
    now_ms,
    parse_message,
)
from echorelay.security.apikey import (
    CLIENT_AUTH_HEADER,
    CLIENT_AUTH_QUERY,
    check_client_key,
    create_api_key_authenticator,
)
from echorelay.security.credentials import CredentialIssuer, InMemoryCredentialStore
from echorelay.server.correlator import ProxiedRequest, RequestCorrelator
from echorelay.server.errors import (
    InvalidRequestError,
    TunnelAuthError,
    TunnelError,
    TunnelNotFoundError,
)
from echorelay.server.heartbeat import HeartbeatMonitor
from echorelay.server.registry import TunnelRegistry, TunnelSession
from echorelay.server.streams import (
    SSE_HEADERS,
    SSESubscriber,
    StreamEvent,
    StreamFanout,
    StreamKey,
    WebSocketSubscriber,
)

logger = structlog.get_logger()

# SSE event name used for everything on the recording stream
RECORDING_SSE_EVENT = "recording_output"

StreamMessageHandler = Callable[[web.WebSocketResponse, str], Awaitable[None]]


class RelayServer:
    """Relay server that bridges mobile clients and NAT-hidden laptops."""

    def __init__(
        self,
        config: ServerConfig,
        registry: TunnelRegistry | None = None,
        credentials: CredentialIssuer | None = None,
    ):
        self.config = config
        self.registry = registry or TunnelRegistry()
        self.credentials = credentials or CredentialIssuer(
            InMemoryCredentialStore(
                max_entries=config.max_credentials,
                unclaimed_ttl=config.credential_ttl,
            )
        )
        self.correlator = RequestCorrelator(self.registry, request_timeout=config.request_timeout)
        self.fanout = StreamFanout()
        self.heartbeat = HeartbeatMonitor(
            self.registry,
            ping_interval=config.ping_interval,
            pong_timeout=config.pong_timeout,
        )
        self.registry.add_eviction_listener(self.fanout.close_tunnel)

        self._registration_auth = create_api_key_authenticator(config.registration_api_key)
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._started_at = time.monotonic()

    def build_app(self) -> web.Application:
        """Create the aiohttp application with every route registered."""
        app = web.Application(
            middlewares=[self._cors_middleware, self._error_middleware],
            client_max_size=get_config().performance.http_max_body_size,
        )
        app.on_response_prepare.append(self._add_cors_headers)
        app.on_shutdown.append(self._on_shutdown)

        app.router.add_post("/tunnel/create", self._handle_create_tunnel)
        app.router.add_get("/tunnel/{tunnel_id}", self._handle_tunnel_connection)
        app.router.add_get("/health", self._handle_health_check)
        app.router.add_get("/metrics", self._handle_metrics)

        # Specific routes before the proxy catch-all
        app.router.add_get(
            "/api/{tunnel_id}/recording/{session_id}/events", self._handle_recording_events
        )
        app.router.add_get(
            "/api/{tunnel_id}/recording/{session_id}/stream", self._handle_recording_stream
        )
        app.router.add_get(
            "/api/{tunnel_id}/terminal/{session_id}/stream", self._handle_terminal_stream
        )
        app.router.add_get("/api/{tunnel_id}/agent/ws", self._handle_agent_stream)
        app.router.add_route("*", "/api/{tunnel_id}/{tail:.*}", self._handle_proxy)

        self._app = app
        return app

    async def start(self) -> None:
        """Start listening on ``config.host:config.port``."""
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        self._started_at = time.monotonic()

        logger.info(
            "Relay server started",
            host=self.config.host,
            port=self.config.port,
            base_url=self.config.base_url,
            ws_protocol=self.config.ws_protocol,
            ping_interval=self.config.ping_interval,
            pong_timeout=self.config.pong_timeout,
            request_timeout=self.config.request_timeout,
        )

    async def stop(self) -> None:
        """Stop the relay server gracefully."""
        logger.info("Stopping relay server...")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Relay server stopped")

    async def _on_shutdown(self, app: web.Application) -> None:
        await self.heartbeat.stop()
        await self.fanout.close_all()
        await self.registry.close_all()

    # Middleware

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except TunnelError as e:
            return web.json_response(e.to_dict(), status=e.status)
        except Exception as e:
            logger.error(
                "Request error",
                method=request.method,
                path=request.path,
                error=str(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc(),
            )
            return web.json_response(
                {"error": "INTERNAL_ERROR", "message": "Internal server error"},
                status=500,
            )

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if request.method == "OPTIONS":
            requested = request.headers.get("Access-Control-Request-Headers")
            return web.Response(
                status=204,
                headers={
                    "Access-Control-Allow-Methods": "GET,HEAD,PUT,PATCH,POST,DELETE",
                    "Access-Control-Allow-Headers": requested or "*",
                    "Access-Control-Max-Age": "86400",
                },
            )
        return await handler(request)

    async def _add_cors_headers(self, request: web.Request, response: web.StreamResponse) -> None:
        response.headers.setdefault("Access-Control-Allow-Origin", self.config.cors_allow_origin)

    # Auth helpers

    def _require_session(self, tunnel_id: str) -> TunnelSession:
        session = self.registry.get(tunnel_id)
        if session is None or session.closed:
            raise TunnelNotFoundError(tunnel_id)
        return session

    def _authorize_client(
        self, session: TunnelSession, request: web.Request, allow_query: bool = False
    ) -> None:
        provided = request.headers.get(CLIENT_AUTH_HEADER)
        if not provided and allow_query:
            provided = request.query.get(CLIENT_AUTH_QUERY)

        result = check_client_key(provided, session.client_auth_key)
        if not result.allowed:
            logger.warning(
                "Client auth failed",
                tunnel_id=session.tunnel_id,
                path=request.path,
                reason=result.reason,
            )
            raise TunnelAuthError(result.reason)

    # Registration

    async def _handle_create_tunnel(self, request: web.Request) -> web.Response:
        auth_result = self._registration_auth.check(request.headers)
        if not auth_result.allowed:
            logger.warning("Unauthorized tunnel registration attempt", reason=auth_result.reason)
            raise TunnelAuthError("Valid API key required for tunnel registration")

        raw = await request.read()
        if raw.strip():
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise InvalidRequestError(f"Invalid JSON body: {e}") from e
        else:
            data = {}

        try:
            body = TunnelCreateRequest.model_validate(data)
        except ValidationError as e:
            raise InvalidRequestError(f"Invalid request: {e}") from e

        credentials = self.credentials.issue(name=body.name, tunnel_id=body.tunnel_id)
        config = {
            "tunnelId": credentials.tunnel_id,
            "apiKey": credentials.client_auth_key,
            "publicUrl": self.config.public_url(credentials.tunnel_id),
            "wsUrl": self.config.ws_url(credentials.tunnel_id),
            "isRestored": credentials.is_restored,
        }

        logger.info(
            "Tunnel created",
            tunnel_id=credentials.tunnel_id,
            name=credentials.name,
            is_restored=credentials.is_restored,
            public_url=config["publicUrl"],
            ws_url=config["wsUrl"],
        )
        return web.json_response({"config": config})

    # Health and metrics

    async def _handle_health_check(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "status": "ok",
                "tunnels": self.registry.size(),
                "uptime": round(time.monotonic() - self._started_at, 3),
            }
        )

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint - requires the registration key."""
        auth_result = self._registration_auth.check(request.headers)
        if not auth_result.allowed:
            raise TunnelAuthError(auth_result.reason)

        ACTIVE_TUNNELS.set(self.registry.size())
        PENDING_REQUESTS.set(self.correlator.pending_count())

        return web.Response(
            body=generate_metrics(),
            headers={"Content-Type": get_content_type()},
        )

    # Tunnel WebSocket

    async def _handle_tunnel_connection(self, request: web.Request) -> web.WebSocketResponse:
        """Handle the laptop's outbound tunnel connection."""
        tunnel_id = request.match_info["tunnel_id"]
        api_key = request.query.get("api_key")

        ws = web.WebSocketResponse(
            autoping=False,
            max_msg_size=get_config().performance.ws_max_size,
            timeout=self.config.ws_close_timeout,
        )
        await ws.prepare(request)

        if not api_key:
            logger.warning("Tunnel connection rejected: missing API key", tunnel_id=tunnel_id)
            TUNNEL_CONNECTIONS.labels(outcome="rejected").inc()
            await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=b"API key required")
            return ws

        credentials = self.credentials.verify_connection_key(tunnel_id, api_key)
        if credentials is None:
            logger.warning("Tunnel connection rejected: invalid API key", tunnel_id=tunnel_id)
            TUNNEL_CONNECTIONS.labels(outcome="rejected").inc()
            await ws.close(code=WSCloseCode.POLICY_VIOLATION, message=b"Invalid API key")
            return ws

        session = await self.registry.register(
            tunnel_id, credentials.client_auth_key, ws, name=credentials.name
        )
        self.heartbeat.watch(session)
        logger.info("Tunnel connected", tunnel_id=tunnel_id, peer=request.remote)

        try:
            await session.send(Connected(tunnel_id=tunnel_id))

            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self._handle_tunnel_message(session, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    logger.warning(
                        "Dropping binary tunnel frame", tunnel_id=tunnel_id, size=len(msg.data)
                    )
                    TUNNEL_FRAMES.labels(direction="in", type="binary").inc()
                elif msg.type == WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == WSMsgType.PONG:
                    self.registry.touch_pong(session)
                elif msg.type == WSMsgType.ERROR:
                    logger.error(
                        "WebSocket error",
                        tunnel_id=tunnel_id,
                        error=str(ws.exception()),
                    )
                    break
        except ConnectionError as e:
            logger.warning("Tunnel connection lost", tunnel_id=tunnel_id, error=str(e))
        finally:
            await self.heartbeat.unwatch(session)
            await self.registry.unregister(tunnel_id, session)
            logger.info("Tunnel disconnected", tunnel_id=tunnel_id)

        return ws

    async def _handle_tunnel_message(self, session: TunnelSession, data: str) -> None:
        """Parse one laptop frame and dispatch it by type.

        Malformed frames are logged and dropped; they never close the tunnel.
        """
        session.frames_received += 1
        session.last_activity_at = time.time()

        try:
            frame = parse_message(data)
        except ValueError as e:
            preview_len = get_config().performance.log_frame_preview
            logger.warning(
                "Dropping invalid tunnel frame",
                tunnel_id=session.tunnel_id,
                error=str(e),
                preview=data[:preview_len],
            )
            TUNNEL_FRAMES.labels(direction="in", type="invalid").inc()
            return

        TUNNEL_FRAMES.labels(direction="in", type=frame.type).inc()
        try:
            await self._route_frame(session, frame)
        except Exception as e:
            logger.error(
                "Failed to handle tunnel frame",
                tunnel_id=session.tunnel_id,
                frame_type=frame.type,
                error=str(e),
                error_type=type(e).__name__,
                traceback=traceback.format_exc(),
            )

    async def _route_frame(self, session: TunnelSession, frame: Frame) -> None:
        tunnel_id = session.tunnel_id

        if isinstance(frame, HttpResponseFrame):
            self.correlator.resolve(session, frame)

        elif isinstance(frame, ClientAuthKey):
            if self.registry.set_client_auth_key(session, frame.key):
                logger.info("Client auth key updated", tunnel_id=tunnel_id)
            else:
                logger.warning("Ignoring client auth key from replaced session", tunnel_id=tunnel_id)

        elif isinstance(frame, RecordingOutput):
            await self._forward_recording_output(session, frame)

        elif isinstance(frame, TTSReady):
            logger.info(
                "TTS ready event received",
                tunnel_id=tunnel_id,
                session_id=frame.session_id,
                text_length=len(frame.text),
            )
            await self._broadcast_tts_ready(
                tunnel_id, frame.session_id, frame.text, frame.timestamp
            )

        elif isinstance(frame, TerminalOutput):
            await self._forward_terminal_output(session, frame)

        elif isinstance(frame, AgentEvent):
            event = frame.event
            payload = StreamEvent.from_payload(event.model_dump(mode="json", exclude_unset=True))
            await self.fanout.broadcast(StreamKey.agent(tunnel_id, event.session_id), payload)
            await self.fanout.broadcast(StreamKey.agent(tunnel_id), payload)
            logger.debug(
                "Agent event broadcast",
                tunnel_id=tunnel_id,
                session_id=event.session_id,
                event_type=event.type,
            )

        elif isinstance(frame, AgentResponse):
            key = self._agent_response_key(tunnel_id, frame.stream_key)
            if key is not None:
                await self.fanout.broadcast(key, StreamEvent.from_payload(frame.payload))

    @staticmethod
    def _agent_response_key(tunnel_id: str, stream_key: str | None) -> StreamKey | None:
        """Agent stream addressed by ``streamKey``, tunnel-wide when absent or unusable.

        Returns None for a key naming another tunnel.
        """
        key = StreamKey.parse(stream_key) if stream_key else None
        if key is not None and key.tunnel_id != tunnel_id:
            logger.warning(
                "Dropping agent response for another tunnel",
                tunnel_id=tunnel_id,
                stream_key=stream_key,
            )
            return None
        if key is None or key.kind != StreamKind.AGENT:
            return StreamKey.agent(tunnel_id)
        return key

    async def _forward_recording_output(self, session: TunnelSession, frame: RecordingOutput) -> None:
        # A completed utterance is announced as tts_ready instead
        if frame.is_complete and frame.text:
            await self._broadcast_tts_ready(
                session.tunnel_id, frame.session_id, frame.text, frame.timestamp
            )
            return

        payload = {
            "type": "recording_output",
            "session_id": frame.session_id,
            "text": frame.text or "",
            "delta": frame.delta or "",
            "timestamp": frame.timestamp if frame.timestamp is not None else now_ms(),
        }
        if frame.raw is not None:
            payload["raw"] = frame.raw
        if frame.is_complete is not None:
            payload["isComplete"] = frame.is_complete

        await self.fanout.broadcast(
            StreamKey.recording(session.tunnel_id, frame.session_id),
            StreamEvent.from_payload(payload, event=RECORDING_SSE_EVENT),
        )

    async def _broadcast_tts_ready(
        self, tunnel_id: str, session_id: str, text: str, timestamp: int | float | None
    ) -> int:
        payload = {
            "type": "tts_ready",
            "session_id": session_id,
            "text": text,
            "timestamp": timestamp if timestamp is not None else now_ms(),
        }
        return await self.fanout.broadcast(
            StreamKey.recording(tunnel_id, session_id),
            StreamEvent.from_payload(payload, event=RECORDING_SSE_EVENT),
        )

    async def _forward_terminal_output(self, session: TunnelSession, frame: TerminalOutput) -> None:
        key = StreamKey.terminal(session.tunnel_id, frame.session_id)

        # Chat messages are already client-ready JSON
        try:
            parsed = json.loads(frame.data)
        except (json.JSONDecodeError, RecursionError):
            parsed = None
        if isinstance(parsed, dict) and parsed.get("type") == "chat_message":
            await self.fanout.broadcast(key, StreamEvent(data=frame.data))
            return

        payload = {
            "type": "output",
            "session_id": frame.session_id,
            "data": frame.data,
            "timestamp": now_ms(),
        }
        await self.fanout.broadcast(key, StreamEvent.from_payload(payload))

    # Public HTTP proxy

    async def _handle_proxy(self, request: web.Request) -> web.Response:
        """Forward ``/api/{tunnel_id}/...`` to the laptop and relay its answer."""
        tunnel_id = request.match_info["tunnel_id"]
        session = self._require_session(tunnel_id)
        if self.config.proxy_auth_required:
            self._authorize_client(session, request)

        prefix = f"/api/{tunnel_id}"
        tail = request.path[len(prefix) :] if request.path.startswith(prefix) else request.path
        proxied = await ProxiedRequest.from_request(request, tail)

        start = time.monotonic()
        status = 500
        try:
            response = await self.correlator.proxy(tunnel_id, proxied)
            status = response.status_code
        except TunnelError as e:
            status = e.status
            raise
        finally:
            duration = time.monotonic() - start
            REQUEST_DURATION.observe(duration)
            HTTP_REQUESTS.labels(method=request.method, status=bucket_status(status)).inc()
            logger.info(
                "Proxied request",
                tunnel_id=tunnel_id,
                method=request.method,
                path=proxied.path,
                status=status,
                duration_ms=int(duration * 1000),
            )

        if response.body is None:
            return web.Response(status=response.status_code)
        return web.json_response(response.body, status=response.status_code)

    # Streams

    async def _handle_recording_events(self, request: web.Request) -> web.StreamResponse:
        """Server-Sent-Events feed of one recording session."""
        tunnel_id = request.match_info["tunnel_id"]
        session_id = request.match_info["session_id"]
        session = self._require_session(tunnel_id)
        self._authorize_client(session, request)

        key = StreamKey.recording(tunnel_id, session_id)
        response = web.StreamResponse(status=200, headers=SSE_HEADERS)
        await response.prepare(request)

        subscriber = SSESubscriber(response, heartbeat_interval=self.config.sse_heartbeat_interval)
        try:
            await self.fanout.subscribe(key, subscriber)
        except (ConnectionError, RuntimeError) as e:
            # Headers are already sent; nothing left to answer with
            logger.warning("SSE client gone before subscribing", stream_key=str(key), error=str(e))
            await subscriber.close()
            return response
        logger.info("SSE recording stream connected", stream_key=str(key))
        try:
            await subscriber.wait_closed()
        finally:
            await self.fanout.unsubscribe(key, subscriber)
            await subscriber.close()
            logger.info("SSE recording stream disconnected", stream_key=str(key))

        return response

    async def _handle_recording_stream(self, request: web.Request) -> web.StreamResponse:
        if not self._is_websocket_request(request):
            return await self._handle_proxy(request)

        tunnel_id = request.match_info["tunnel_id"]
        session = self._require_session(tunnel_id)
        self._authorize_client(session, request, allow_query=True)

        key = StreamKey.recording(tunnel_id, request.match_info["session_id"])
        return await self._serve_stream_socket(request, key)

    async def _handle_terminal_stream(self, request: web.Request) -> web.StreamResponse:
        if not self._is_websocket_request(request):
            return await self._handle_proxy(request)

        tunnel_id = request.match_info["tunnel_id"]
        session_id = request.match_info["session_id"]
        session = self._require_session(tunnel_id)
        self._authorize_client(session, request, allow_query=True)

        key = StreamKey.terminal(tunnel_id, session_id)
        return await self._serve_stream_socket(
            request, key, partial(self._forward_terminal_input, tunnel_id, session_id)
        )

    async def _handle_agent_stream(self, request: web.Request) -> web.StreamResponse:
        if not self._is_websocket_request(request):
            return await self._handle_proxy(request)

        tunnel_id = request.match_info["tunnel_id"]
        session = self._require_session(tunnel_id)
        self._authorize_client(session, request, allow_query=True)

        key = StreamKey.agent(tunnel_id, request.query.get("session_id", ""))
        return await self._serve_stream_socket(
            request, key, partial(self._forward_agent_request, tunnel_id, key)
        )

    @staticmethod
    def _is_websocket_request(request: web.Request) -> bool:
        return web.WebSocketResponse().can_prepare(request).ok

    async def _serve_stream_socket(
        self,
        request: web.Request,
        key: StreamKey,
        on_message: StreamMessageHandler | None = None,
    ) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(
            heartbeat=self.config.ping_interval,
            max_msg_size=get_config().performance.ws_max_size,
        )
        await ws.prepare(request)

        subscriber = WebSocketSubscriber(ws)
        await self.fanout.subscribe(key, subscriber)
        logger.info("Stream WebSocket connected", stream_key=str(key))

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT and on_message is not None:
                    await on_message(ws, msg.data)
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "Stream WebSocket error", stream_key=str(key), error=str(ws.exception())
                    )
                    break
        finally:
            await self.fanout.unsubscribe(key, subscriber)
            subscriber.closed.set()
            logger.info("Stream WebSocket disconnected", stream_key=str(key))

        return ws

    async def _forward_terminal_input(
        self, tunnel_id: str, session_id: str, ws: web.WebSocketResponse, data: str
    ) -> None:
        try:
            message = json.loads(data)
        except (json.JSONDecodeError, RecursionError):
            logger.warning("Invalid terminal input message", tunnel_id=tunnel_id)
            return

        if not isinstance(message, dict) or message.get("type") != "input":
            return
        if not isinstance(message.get("data"), str):
            logger.warning("Invalid terminal input message", tunnel_id=tunnel_id)
            return

        session = self.registry.get(tunnel_id)
        if session is None or session.closed:
            logger.warning("Tunnel not available for terminal input", tunnel_id=tunnel_id)
            return

        try:
            await session.send(TerminalInput(session_id=session_id, data=message["data"]))
        except ConnectionError as e:
            logger.warning("Failed to forward terminal input", tunnel_id=tunnel_id, error=str(e))

    async def _forward_agent_request(
        self, tunnel_id: str, key: StreamKey, ws: web.WebSocketResponse, data: str
    ) -> None:
        session = self.registry.get(tunnel_id)
        if session is None or session.closed:
            logger.warning("Tunnel not available for agent message", tunnel_id=tunnel_id)
            await ws.send_json({"type": "error", "error": "Laptop not connected"})
            return

        try:
            payload = json.loads(data)
        except (json.JSONDecodeError, RecursionError):
            await ws.send_json({"type": "error", "error": "Invalid message format"})
            return

        try:
            await session.send(AgentRequest(tunnel_id=tunnel_id, stream_key=str(key), payload=payload))
        except ConnectionError as e:
            logger.warning("Failed to forward agent message", tunnel_id=tunnel_id, error=str(e))
            await ws.send_json({"type": "error", "error": "Laptop not connected"})

    # Introspection

    def get_tunnel_count(self) -> int:
        return self.registry.size()

    def get_tunnel(self, tunnel_id: str) -> TunnelSession | None:
        return self.registry.get(tunnel_id)


async def run_server(config: ServerConfig) -> None:
    """Run the relay server until SIGINT or SIGTERM."""
    server = RelayServer(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        await server.start()
        await stop_event.wait()
    finally:
        await server.stop()
