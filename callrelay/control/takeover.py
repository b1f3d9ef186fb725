"""
Takeover State Machine
======================

Decides whether the AI engine or a human operator authors customer-facing
content for a session.

    ai-controlled --takeover(agent)--> human-controlled
    human-controlled --release()-----> ai-controlled

Repeated calls are idempotent: a second ``takeover`` only updates the agent
when it changed, ``release`` on an AI-controlled session does nothing.
Transitions for one session are serialized; each one is persisted to the
state store, announced to the engine as a contextual update and broadcast to
the session's organization.
"""

from __future__ import annotations

import asyncio
import weakref

from opentelemetry import trace
from utils.ml_logging import get_logger

from callrelay.broadcast.dispatcher import BroadcastDispatcher
from callrelay.broadcast.envelopes import make_event
from callrelay.clock import Clock, SystemClock
from callrelay.engine.registry import ActiveSessionRegistry
from callrelay.enums.monitoring import SpanAttr
from callrelay.errors import EngineConnectionError, InvalidTransition
from callrelay.state.models import ControlOwner, ControlState, ConversationSession
from callrelay.state.store import ConversationStateStore

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)


class TakeoverStateMachine:
    def __init__(
        self,
        store: ConversationStateStore,
        dispatcher: BroadcastDispatcher,
        registry: ActiveSessionRegistry,
        *,
        clock: Clock | None = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.registry = registry
        self.clock = clock or SystemClock()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, session_id: str) -> asyncio.Lock:
        """Per-session control lock, shared with the session's engine connection."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def _load(
        self, session_id: str, action: str, *, live: bool = True
    ) -> ConversationSession:
        session = await self.store.get(session_id)
        if session is None:
            raise InvalidTransition(session_id, action)
        if live and session.status.is_terminal:
            raise InvalidTransition(session_id, action, f"session is {session.status.value}")
        return session

    async def current(self, session_id: str) -> ControlState:
        session = await self._load(session_id, "inspect", live=False)
        return ControlState.from_session(session)

    async def takeover(
        self,
        session_id: str,
        agent_id: str,
        reason: str | None = None,
        *,
        keep_human_owner: bool = False,
    ) -> ControlState:
        """Hand the session to ``agent_id``.

        With ``keep_human_owner`` a session that a human already controls is
        left with that human instead of being transferred.
        """
        if not agent_id:
            raise ValueError("agent_id is required for takeover")

        with tracer.start_as_current_span(
            "takeover",
            attributes={
                SpanAttr.SESSION_ID.value: session_id,
                SpanAttr.HUMAN_AGENT_ID.value: agent_id,
            },
        ):
            async with self.lock_for(session_id):
                session = await self._load(session_id, "take over")
                previous_agent = session.human_agent_id

                if session.is_human_controlled and previous_agent == agent_id:
                    logger.debug(
                        "Takeover by %s is a no-op; already in control",
                        agent_id,
                        extra={"session_id": session_id},
                    )
                    return ControlState.from_session(session)
                if session.is_human_controlled and keep_human_owner:
                    logger.info(
                        "Takeover by %s ignored; %s already in control",
                        agent_id,
                        previous_agent,
                        extra={"session_id": session_id},
                    )
                    return ControlState.from_session(session)

                state = await self._persist(
                    session, ControlOwner.HUMAN, agent_id, reason or "human takeover"
                )

                if session.is_human_controlled:
                    event_type = "human-control-transferred"
                    logger.info(
                        "Control transferred from %s to %s",
                        previous_agent,
                        agent_id,
                        extra={"session_id": session_id},
                    )
                else:
                    event_type = "human-control-started"
                    logger.keyinfo(
                        "Human agent %s took control", agent_id, extra={"session_id": session_id}
                    )
                    await self._notify_engine(session_id, takeover_agent=agent_id)

                await self._broadcast(event_type, session, state, previous_agent=previous_agent)
                return state

    async def release(self, session_id: str, reason: str | None = None) -> ControlState:
        """Return control of the session to the AI engine."""
        with tracer.start_as_current_span(
            "release", attributes={SpanAttr.SESSION_ID.value: session_id}
        ):
            async with self.lock_for(session_id):
                session = await self._load(session_id, "release")
                if not session.is_human_controlled:
                    logger.debug(
                        "Release is a no-op; AI already in control",
                        extra={"session_id": session_id},
                    )
                    return ControlState.from_session(session)

                previous_agent = session.human_agent_id
                state = await self._persist(session, ControlOwner.AI, None, reason or "released")
                logger.keyinfo(
                    "Human agent %s released control",
                    previous_agent,
                    extra={"session_id": session_id},
                )
                await self._notify_engine(session_id)
                await self._broadcast(
                    "human-control-ended", session, state, previous_agent=previous_agent
                )
                return state

    async def _persist(
        self,
        session: ConversationSession,
        owner: ControlOwner,
        agent_id: str | None,
        reason: str,
    ) -> ControlState:
        now = self.clock.now()
        await self.store.put(
            session.id,
            {
                "control_owner": owner,
                "human_agent_id": agent_id,
                "control_changed_at": now,
                "control_reason": reason,
            },
            create=False,
        )
        return ControlState(
            session_id=session.id,
            owner=owner,
            human_agent_id=agent_id,
            changed_at=now,
            reason=reason,
        )

    async def _notify_engine(self, session_id: str, takeover_agent: str | None = None) -> None:
        """Tell the engine to stand down or resume; the store stays authoritative."""
        connection = self.registry.get(session_id)
        if connection is None:
            logger.info(
                "No live engine connection to notify", extra={"session_id": session_id}
            )
            return
        try:
            if takeover_agent is not None:
                await connection.notify_takeover(takeover_agent)
            else:
                await connection.notify_release()
        except EngineConnectionError as exc:
            logger.warning(
                "Engine not notified of control change: %s",
                exc.message,
                extra={"session_id": session_id},
            )

    async def _broadcast(
        self,
        event_type: str,
        session: ConversationSession,
        state: ControlState,
        *,
        previous_agent: str | None,
    ) -> None:
        payload = state.to_wire()
        payload["previousAgentId"] = previous_agent
        await self.dispatcher.publish(
            make_event(
                event_type,
                organization_id=session.organization_id,
                session_id=session.id,
                payload=payload,
            )
        )
