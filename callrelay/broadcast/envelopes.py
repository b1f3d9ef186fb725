"""
Dashboard Broadcast Envelopes
=============================

Every message pushed to a dashboard subscriber has the same shape::

    {"type", "organizationId", "sessionId", "payload", "timestamp"}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

BroadcastType = Literal[
    "connection-ack",
    "session-snapshot",
    "session-started",
    "session-updated",
    "session-ended",
    "session-error",
    "transcript-entry",
    "transcript-partial",
    "human-control-started",
    "human-control-transferred",
    "human-control-ended",
    "engine-status",
    "conversation-history",
    "pong",
    "error",
]


def _utc_now_iso() -> str:
    """Return the current UTC timestamp in ISO-8601 format."""
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class BroadcastEvent:
    type: BroadcastType
    organization_id: str
    session_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_utc_now_iso)

    def to_envelope(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "organizationId": self.organization_id,
            "sessionId": self.session_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


def make_event(
    etype: BroadcastType,
    *,
    organization_id: str,
    session_id: str | None = None,
    payload: dict[str, Any] | None = None,
) -> BroadcastEvent:
    """Build a broadcast event stamped with the current UTC time."""
    return BroadcastEvent(
        type=etype,
        organization_id=organization_id,
        session_id=session_id,
        payload=payload or {},
    )
