"""
Interfaces to the services the coordinator depends on but does not own.

Lead resolution, durable persistence, customer channel delivery and history
reads are supplied by the hosting application.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from callrelay.state.models import ConversationSession, Speaker

HistoryChannel = Literal["voice", "sms"]


@dataclass(frozen=True)
class LeadIdentity:
    organization_id: str
    lead_id: str
    display_name: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HistoryTurn:
    """One previously persisted utterance for a lead."""

    session_id: str
    channel: HistoryChannel
    speaker: str
    text: str
    timestamp: float


class LeadResolver(Protocol):
    async def resolve(self, channel_identity: str) -> LeadIdentity | None: ...


class PersistenceService(Protocol):
    async def save_session(self, session: ConversationSession) -> None: ...


class ChannelGateway(Protocol):
    async def deliver(self, session: ConversationSession, text: str, speaker: Speaker) -> None: ...


class HistorySource(Protocol):
    async def get_summaries(self, lead_id: str, limit: int) -> list[str]: ...

    async def get_recent_turns(self, lead_id: str, limit: int) -> list[HistoryTurn]: ...

    async def get_lead_profile(self, lead_id: str) -> dict[str, Any]: ...
