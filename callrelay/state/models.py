"""
Conversation state models.

``ConversationSession`` is the merged view of a session hash; the transcript
is stored separately as a sequence-scored set and attached on demand.
Field names are snake_case in Python and camelCase on the wire.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SessionStatus(str, Enum):
    INITIATED = "initiated"
    ACTIVE = "active"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.ERROR)


class ControlOwner(str, Enum):
    AI = "ai"
    HUMAN = "human"


class Speaker(str, Enum):
    CUSTOMER = "customer"
    AI = "ai"
    HUMAN = "human"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class TranscriptEntry(_WireModel):
    """One utterance; ``sequence`` is assigned by the state store on append."""

    speaker: Speaker
    text: str
    timestamp: float
    sequence: int = 0
    authoritative: bool = True
    agent_id: str | None = None


class ConversationSession(_WireModel):
    id: str
    organization_id: str
    lead_id: str | None = None
    channel_identity: str | None = None
    status: SessionStatus = SessionStatus.INITIATED
    started_at: float
    ended_at: float | None = None
    control_owner: ControlOwner = ControlOwner.AI
    human_agent_id: str | None = None
    control_changed_at: float | None = None
    control_reason: str | None = None
    last_event_at: float | None = None
    last_error: str | None = None
    error_at: float | None = None
    channel_config: dict[str, Any] = Field(default_factory=dict)
    transcript: list[TranscriptEntry] = Field(default_factory=list)

    @property
    def is_human_controlled(self) -> bool:
        return self.control_owner == ControlOwner.HUMAN


class ControlState(_WireModel):
    session_id: str
    owner: ControlOwner
    human_agent_id: str | None = None
    changed_at: float | None = None
    reason: str | None = None

    @classmethod
    def from_session(cls, session: ConversationSession) -> ControlState:
        return cls(
            session_id=session.id,
            owner=session.control_owner,
            human_agent_id=session.human_agent_id,
            changed_at=session.control_changed_at,
            reason=session.control_reason,
        )


class DynamicContextSnapshot(_WireModel):
    lead_id: str
    text: str
    built_at: float
    expires_at: float
