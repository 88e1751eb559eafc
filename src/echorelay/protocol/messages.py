"""Tunnel WebSocket protocol: JSON text frames tagged by ``type``.

Field names on the wire are camelCase (``requestId``, ``statusCode``,
``sessionId``); the models expose snake_case attributes and serialize by alias.
"""

from __future__ import annotations

import json
import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class StreamKind(StrEnum):
    """Logical stream a tunnel event belongs to."""

    RECORDING = "recording"
    TERMINAL = "terminal"
    AGENT = "agent"


def now_ms() -> int:
    return int(time.time() * 1000)


class Frame(BaseModel):
    """Base for all tunnel frames."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# Relay -> laptop


class Connected(Frame):
    """Acknowledgement sent once the tunnel is registered."""

    type: Literal["connected"] = "connected"
    tunnel_id: str = Field(alias="tunnelId")


class HttpRequestFrame(Frame):
    """HTTP request proxied through the tunnel."""

    type: Literal["http_request"] = "http_request"
    request_id: str = Field(alias="requestId")
    method: str
    path: str
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    query: dict[str, str] = Field(default_factory=dict)


class TerminalInput(Frame):
    type: Literal["terminal_input"] = "terminal_input"
    session_id: str = Field(alias="sessionId")
    data: str


class AgentRequest(Frame):
    type: Literal["agent_request"] = "agent_request"
    tunnel_id: str = Field(alias="tunnelId")
    stream_key: str = Field(alias="streamKey")
    payload: Any = None


# Laptop -> relay


class HttpResponseFrame(Frame):
    """Laptop's answer to an ``http_request`` frame."""

    type: Literal["http_response"] = "http_response"
    request_id: str = Field(alias="requestId")
    status_code: int = Field(default=200, alias="statusCode", ge=100, le=599)
    body: Any = None


class ClientAuthKey(Frame):
    """Laptop-chosen key that mobile clients must present."""

    type: Literal["client_auth_key"] = "client_auth_key"
    key: str = Field(min_length=1)


class RecordingOutput(Frame):
    type: Literal["recording_output"] = "recording_output"
    session_id: str = Field(alias="sessionId")
    text: str | None = None
    delta: str | None = None
    raw: Any = None
    timestamp: int | float | None = None
    is_complete: bool | None = Field(default=None, alias="isComplete")


class TTSReady(Frame):
    type: Literal["tts_ready"] = "tts_ready"
    session_id: str
    text: str = Field(min_length=1)
    timestamp: int | float | None = None


class TerminalOutput(Frame):
    type: Literal["terminal_output"] = "terminal_output"
    session_id: str = Field(alias="sessionId")
    data: str


class AgentEventBody(Frame):
    """Unified agent event emitted by the laptop for one session."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str
    session_id: str
    message_id: str | None = None
    timestamp: int | float | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


class AgentEvent(Frame):
    type: Literal["agent_event"] = "agent_event"
    event: AgentEventBody


class AgentResponse(Frame):
    """Agent reply for the agent stream named by ``streamKey``, tunnel-wide when absent."""

    type: Literal["agent_response"] = "agent_response"
    tunnel_id: str | None = Field(default=None, alias="tunnelId")
    stream_key: str | None = Field(default=None, alias="streamKey")
    payload: dict[str, Any]


INBOUND_FRAME_TYPES: dict[str, type[Frame]] = {
    "http_response": HttpResponseFrame,
    "client_auth_key": ClientAuthKey,
    "recording_output": RecordingOutput,
    "tts_ready": TTSReady,
    "terminal_output": TerminalOutput,
    "agent_event": AgentEvent,
    "agent_response": AgentResponse,
}


def encode_message(msg: Frame) -> str:
    """Serialize a frame to its JSON wire form."""
    return msg.model_dump_json(by_alias=True)


def decode_message(data: str | bytes) -> dict[str, Any]:
    """Decode a JSON text frame into a dict.

    Raises:
        ValueError: If the payload is not JSON or not a JSON object with a string ``type``.
    """
    try:
        raw = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"Invalid JSON frame: {e}") from e
    except RecursionError as e:
        raise ValueError("Invalid JSON frame: nesting too deep") from e

    if not isinstance(raw, dict):
        raise ValueError(f"Frame must be a JSON object, got {type(raw).__name__}")
    if not isinstance(raw.get("type"), str):
        raise ValueError("Frame is missing a string 'type' field")
    return raw


def parse_message(data: str | bytes) -> Frame:
    """Decode and parse an inbound frame into a typed model.

    Raises:
        ValueError: For undecodable frames and unknown frame types.
        pydantic.ValidationError: If a known frame type fails its schema.
    """
    raw = decode_message(data)
    msg_type = raw["type"]

    if msg_type not in INBOUND_FRAME_TYPES:
        raise ValueError(f"Unknown message type: {msg_type}")

    return INBOUND_FRAME_TYPES[msg_type].model_validate(raw)


# HTTP API


class TunnelCreateRequest(BaseModel):
    """Body of ``POST /tunnel/create``; an empty body counts as ``{}``."""

    model_config = ConfigDict(strict=True, extra="ignore")

    name: str | None = Field(default=None, max_length=200)
    tunnel_id: str | None = Field(default=None, pattern=r"^[A-Za-z0-9_-]{1,64}$")
