"""
Wire events exchanged with the conversation engine.

Inbound frames are parsed into a closed set of event models keyed by ``type``.
Frames with an unrecognised ``type`` become :class:`UnknownEvent`; frames that
cannot be parsed at all raise :class:`ProtocolError`.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from callrelay.errors import ProtocolError


class EventKind(str, Enum):
    TRANSCRIPT_PARTIAL = "transcript-partial"
    TRANSCRIPT_FINAL = "transcript-final"
    RESPONSE = "response"
    TOOL_CALL_REQUEST = "tool-call-request"
    HEARTBEAT = "heartbeat"
    ERROR = "error"
    UNKNOWN = "unknown"


class _WireEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class _InboundEvent(_WireEvent):
    @property
    def kind(self) -> EventKind:
        return EventKind(self.type)


# ═══════════════════════════════════════════════════════════════════════════════
# INBOUND (engine -> coordinator)
# ═══════════════════════════════════════════════════════════════════════════════


class TranscriptPartial(_InboundEvent):
    type: Literal["transcript-partial"] = "transcript-partial"
    text: str


class TranscriptFinal(_InboundEvent):
    """Finalised customer utterance."""

    type: Literal["transcript-final"] = "transcript-final"
    text: str


class AgentResponse(_InboundEvent):
    """AI-authored reply intended for the customer."""

    type: Literal["response"] = "response"
    text: str


class ToolCallRequest(_InboundEvent):
    type: Literal["tool-call-request"] = "tool-call-request"
    name: str
    call_id: str
    args: dict[str, Any] = Field(default_factory=dict)


class Heartbeat(_InboundEvent):
    type: Literal["heartbeat"] = "heartbeat"
    sequence: int | None = None


class EngineError(_InboundEvent):
    type: Literal["error"] = "error"
    message: str = ""
    code: str | None = None


class UnknownEvent(BaseModel):
    """Frame whose ``type`` is outside the known inbound set."""

    type: str
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def kind(self) -> EventKind:
        return EventKind.UNKNOWN


KnownInboundEvent = Annotated[
    Union[
        TranscriptPartial,
        TranscriptFinal,
        AgentResponse,
        ToolCallRequest,
        Heartbeat,
        EngineError,
    ],
    Field(discriminator="type"),
]
InboundEvent = Union[
    TranscriptPartial,
    TranscriptFinal,
    AgentResponse,
    ToolCallRequest,
    Heartbeat,
    EngineError,
    UnknownEvent,
]

_INBOUND_ADAPTER: TypeAdapter = TypeAdapter(KnownInboundEvent)
KNOWN_INBOUND_TYPES = frozenset(k.value for k in EventKind if k is not EventKind.UNKNOWN)


def parse_inbound(frame: str | bytes | dict[str, Any]) -> InboundEvent:
    """Parse one engine frame; raises :class:`ProtocolError` if it is malformed."""
    if isinstance(frame, (str, bytes)):
        try:
            payload = json.loads(frame)
        except (TypeError, ValueError) as exc:
            raise ProtocolError(f"Inbound frame is not valid JSON: {exc}") from exc
    else:
        payload = frame

    if not isinstance(payload, dict):
        raise ProtocolError("Inbound frame must be a JSON object")
    event_type = payload.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ProtocolError("Inbound frame is missing 'type'")
    if event_type not in KNOWN_INBOUND_TYPES:
        return UnknownEvent(type=event_type, raw=payload)

    try:
        return _INBOUND_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        raise ProtocolError(
            f"Invalid '{event_type}' frame: {exc.error_count()} validation error(s)",
            code="invalid_frame",
        ) from exc


# ═══════════════════════════════════════════════════════════════════════════════
# OUTBOUND (coordinator -> engine)
# ═══════════════════════════════════════════════════════════════════════════════


class SessionInitConfig(_WireEvent):
    context_text: str
    first_message_hint: str | None = None
    channel_config: dict[str, Any] = Field(default_factory=dict)


class SessionInit(_WireEvent):
    type: Literal["session-init"] = "session-init"
    session_id: str
    config: SessionInitConfig


class UserText(_WireEvent):
    type: Literal["user-text"] = "user-text"
    text: str


class UserAudioChunk(_WireEvent):
    type: Literal["user-audio-chunk"] = "user-audio-chunk"
    chunk: str


class ContextualUpdate(_WireEvent):
    type: Literal["contextual-update"] = "contextual-update"
    text: str


class ToolCallResult(_WireEvent):
    type: Literal["tool-call-result"] = "tool-call-result"
    call_id: str
    result: dict[str, Any]


class HeartbeatAck(_WireEvent):
    type: Literal["heartbeat-ack"] = "heartbeat-ack"
    sequence: int | None = None


OutboundEvent = Union[
    SessionInit, UserText, UserAudioChunk, ContextualUpdate, ToolCallResult, HeartbeatAck
]


def is_customer_facing(event: OutboundEvent) -> bool:
    """True for content that would make the engine speak to the customer."""
    return isinstance(event, (UserText, UserAudioChunk))


def encode_outbound(event: OutboundEvent) -> str:
    return event.model_dump_json(by_alias=True, exclude_none=True)
