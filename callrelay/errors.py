"""
Exception hierarchy for the session coordinator.

Every error carries a human readable ``message`` and a stable ``code`` so the
API layer can translate it without string matching.
"""

from __future__ import annotations


class CallRelayError(Exception):
    """Base class for coordinator errors."""

    code = "callrelay_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.code, "message": self.message}


class EngineConnectionError(CallRelayError):
    """Transient failure talking to the conversation engine; triggers reconnect."""

    code = "engine_connection_error"


class NotConnectedError(EngineConnectionError):
    """Send attempted while the engine socket is not open."""

    code = "not_connected"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is not connected to the conversation engine")
        self.session_id = session_id


class ProtocolError(CallRelayError):
    """Malformed or unexpected inbound engine message."""

    code = "protocol_error"


class StateNotFoundError(CallRelayError):
    """Session state is absent or expired."""

    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found or expired")
        self.session_id = session_id


class ImmutableFieldError(CallRelayError):
    """Attempt to change a field that is fixed once the session exists."""

    code = "immutable_field"


class InvalidTransition(CallRelayError):
    """Control transition requested for a session that no longer exists or has ended."""

    code = "invalid_transition"

    def __init__(self, session_id: str, action: str, reason: str = "session no longer exists"):
        super().__init__(f"Cannot {action} session {session_id}: {reason}")
        self.session_id = session_id
        self.action = action


class BroadcastDeliveryError(CallRelayError):
    """Delivery to a single dashboard subscriber failed."""

    code = "broadcast_delivery_error"

    def __init__(self, connection_id: str, reason: str):
        super().__init__(f"Delivery to subscriber {connection_id} failed: {reason}")
        self.connection_id = connection_id


class ControlOwnershipError(CallRelayError):
    """Human-authored content from an agent that does not hold control."""

    code = "not_in_control"

    def __init__(self, session_id: str, agent_id: str):
        super().__init__(f"Agent {agent_id} does not control session {session_id}")
        self.session_id = session_id
        self.agent_id = agent_id


class UnknownIdentityError(CallRelayError):
    """Lead resolution found nothing for a channel identity."""

    code = "unknown_identity"

    def __init__(self, channel_identity: str):
        super().__init__("No lead found for channel identity")
        self.channel_identity = channel_identity
