"""
Session API schemas.

Request bodies accept camelCase (dashboard clients) or snake_case keys;
responses are camelCase.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartSessionRequest(_ApiModel):
    channel_identity: str = Field(..., min_length=1, description="Phone number or channel handle")
    channel_config: dict[str, Any] = Field(
        default_factory=dict, description="Channel settings passed to the engine"
    )
    first_message_hint: str | None = Field(None, description="Suggested opening line")
    session_id: str | None = Field(None, description="Caller-supplied session id")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "channelIdentity": "+15551234567",
                "channelConfig": {"channel": "voice"},
                "firstMessageHint": "Hi, this is Ava calling about your appointment.",
            }
        }
    )


class TakeoverRequest(_ApiModel):
    agent_id: str = Field(..., min_length=1, description="Human agent taking control")
    reason: str | None = None


class ReleaseRequest(_ApiModel):
    reason: str | None = None


class HumanMessageRequest(_ApiModel):
    agent_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)


class CustomerMessageRequest(_ApiModel):
    text: str = Field(..., min_length=1)


class CompleteSessionRequest(_ApiModel):
    status: Literal["completed", "error"] = "completed"


class SessionListResponse(_ApiModel):
    organization_id: str
    count: int
    sessions: list[dict[str, Any]]


class TranscriptResponse(_ApiModel):
    session_id: str
    count: int
    entries: list[dict[str, Any]]
