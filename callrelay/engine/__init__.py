"""
Session Connection Manager: engine sockets, wire events, tools and reconnection.

Exports:
- SessionConnection / SessionDescriptor: one engine connection per session
- ActiveSessionRegistry: live connections, owned by the application lifespan
- ToolRegistry: client tools the engine may call
- ReconnectPolicy / RetryState: backoff policy and state
- WebSocketEngineConnector: websockets-based engine transport
"""

from callrelay.engine.connection import (
    ConnectionState,
    LifecycleEvent,
    SessionConnection,
    SessionDescriptor,
)
from callrelay.engine.events import EventKind, parse_inbound
from callrelay.engine.registry import ActiveSessionRegistry
from callrelay.engine.retry import ReconnectPolicy, RetryState
from callrelay.engine.tools import ToolContext, ToolRegistry
from callrelay.engine.transport import WebSocketEngineConnector

__all__ = [
    "ActiveSessionRegistry",
    "ConnectionState",
    "EventKind",
    "LifecycleEvent",
    "ReconnectPolicy",
    "RetryState",
    "SessionConnection",
    "SessionDescriptor",
    "ToolContext",
    "ToolRegistry",
    "WebSocketEngineConnector",
    "parse_inbound",
]
