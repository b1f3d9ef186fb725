"""
Dashboard WebSocket message schemas.

Clients send ``{"type": ..., "sessionId": ..., ...}``; anything else in the
object is ignored.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

DashboardCommandType = Literal[
    "ping",
    "subscribe_conversation",
    "unsubscribe_conversation",
    "takeover_conversation",
    "release_conversation",
    "send_human_message",
    "get_conversation_history",
]


class DashboardCommand(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    type: DashboardCommandType
    session_id: str | None = None
    agent_id: str | None = None
    text: str | None = None
    reason: str | None = None
