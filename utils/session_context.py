"""
Session Context for Log and Span Correlation.

Sets the session's correlation attributes once, at the point where a session's
work begins (engine receive loop, dashboard socket, HTTP request), and lets
every log record and span created underneath pick them up.

Usage:
    async with session_context(
        session_id="sess_123",
        organization_id="org_1",
        transport_type="ENGINE",
    ):
        await receive_loop()  # logs and spans carry session/org ids

    logger.info("Relayed customer text")  # no extra= needed inside the block
"""

from __future__ import annotations

import contextvars
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import trace

# ═══════════════════════════════════════════════════════════════════════════════
# CONTEXT VARIABLE
# ═══════════════════════════════════════════════════════════════════════════════

_SCALAR_TYPES = (str, int, float, bool)


@dataclass
class SessionCorrelation:
    """
    Correlation data for one unit of session work.

    Attributes:
        session_id: Conversation session identifier
        organization_id: Tenant owning the session
        connection_id: Dashboard or engine connection identifier
        transport_type: "ENGINE", "DASHBOARD" or "HTTP"
        extra: Additional scalar attributes
    """

    session_id: str | None = None
    organization_id: str | None = None
    connection_id: str | None = None
    transport_type: str | None = None
    extra: dict = field(default_factory=dict)

    @property
    def short_id(self) -> str:
        if self.session_id:
            return self.session_id[-8:]
        if self.connection_id:
            return self.connection_id[-8:]
        return "unknown"

    def to_span_attributes(self) -> dict[str, Any]:
        attrs: dict[str, Any] = {}
        if self.session_id:
            attrs["session.id"] = self.session_id
            attrs["ai.session.id"] = self.session_id
        if self.organization_id:
            attrs["organization.id"] = self.organization_id
        if self.connection_id:
            attrs["connection.id"] = self.connection_id
        if self.transport_type:
            attrs["transport.type"] = self.transport_type
        for key, value in self.extra.items():
            if isinstance(value, _SCALAR_TYPES):
                attrs[key] = value
        return attrs

    def to_log_record(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id or "-",
            "organization_id": self.organization_id or "-",
            "conn_id": self.connection_id or "-",
            "transport_type": self.transport_type or "-",
            **{k: v for k, v in self.extra.items() if isinstance(v, _SCALAR_TYPES)},
        }


_session_context: contextvars.ContextVar[SessionCorrelation | None] = contextvars.ContextVar(
    "session_correlation", default=None
)


# ═══════════════════════════════════════════════════════════════════════════════
# PUBLIC API
# ═══════════════════════════════════════════════════════════════════════════════


@asynccontextmanager
async def session_context(
    session_id: str | None = None,
    organization_id: str | None = None,
    connection_id: str | None = None,
    transport_type: str | None = None,
    **extra: Any,
):
    """
    Establish session correlation for all nested operations.

    Opens a SERVER span named ``session[<transport>]`` carrying the
    correlation attributes; the context variable is reset on exit.
    """
    correlation = SessionCorrelation(
        session_id=session_id,
        organization_id=organization_id,
        connection_id=connection_id,
        transport_type=transport_type,
        extra=extra,
    )
    token = _session_context.set(correlation)

    tracer = trace.get_tracer(__name__)
    with tracer.start_as_current_span(
        f"session[{transport_type or 'unknown'}]",
        kind=trace.SpanKind.SERVER,
        attributes=correlation.to_span_attributes(),
    ):
        try:
            yield correlation
        finally:
            _session_context.reset(token)


def set_session_context(**fields: Any) -> contextvars.Token:
    """Set correlation without opening a span; reset with the returned token."""
    known = {
        name: fields.pop(name, None)
        for name in ("session_id", "organization_id", "connection_id", "transport_type")
    }
    return _session_context.set(SessionCorrelation(**known, extra=fields))


def reset_session_context(token: contextvars.Token) -> None:
    _session_context.reset(token)


def get_session_correlation() -> SessionCorrelation | None:
    """Current correlation, or None outside a ``session_context`` block."""
    return _session_context.get()


def get_log_extras() -> dict[str, Any]:
    ctx = _session_context.get()
    if ctx:
        return ctx.to_log_record()
    return {"session_id": "-", "organization_id": "-", "conn_id": "-", "transport_type": "-"}


# ═══════════════════════════════════════════════════════════════════════════════
# SPAN PROCESSOR
# ═══════════════════════════════════════════════════════════════════════════════


def inject_session_attributes(span: trace.Span | None = None) -> None:
    target_span = span or trace.get_current_span()
    if not target_span or not target_span.is_recording():
        return
    ctx = _session_context.get()
    if not ctx:
        return
    for key, value in ctx.to_span_attributes().items():
        target_span.set_attribute(key, value)


class SessionContextSpanProcessor:
    """
    OpenTelemetry SpanProcessor that stamps session attributes on every span.

    Installed on the tracer provider by ``utils.telemetry_config``.
    """

    def on_start(self, span: trace.Span, parent_context: Any | None = None) -> None:
        inject_session_attributes(span)

    def on_end(self, span: trace.Span) -> None:
        pass

    def shutdown(self) -> None:
        pass

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return True
