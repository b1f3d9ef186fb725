"""
Conversation state: models, storage backends and the state store.

Exports:
- ConversationStateStore: TTL-bounded session state with org/identity indexes
- RedisStateBackend / InMemoryStateBackend: storage primitives for the store
- ConversationSession, TranscriptEntry, ControlState: state models
"""

from callrelay.state.backends import InMemoryStateBackend, RedisStateBackend, StateBackend
from callrelay.state.models import (
    ControlOwner,
    ControlState,
    ConversationSession,
    DynamicContextSnapshot,
    SessionStatus,
    Speaker,
    TranscriptEntry,
)
from callrelay.state.store import ConversationStateStore

__all__ = [
    "ControlOwner",
    "ControlState",
    "ConversationSession",
    "ConversationStateStore",
    "DynamicContextSnapshot",
    "InMemoryStateBackend",
    "RedisStateBackend",
    "SessionStatus",
    "Speaker",
    "StateBackend",
    "TranscriptEntry",
]
