"""
Session Coordinator
===================

Composition root for one process: resolves the caller, assembles context,
opens the engine connection, and relays everything worth showing to the
dashboard dispatcher. The API layer only talks to this object.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel
from utils.ml_logging import get_logger

from callrelay.broadcast.dispatcher import BroadcastDispatcher
from callrelay.broadcast.envelopes import BroadcastEvent, make_event
from callrelay.clock import Clock, SystemClock
from callrelay.collaborators import ChannelGateway, LeadResolver, PersistenceService
from callrelay.context.assembler import ContextAssembler
from callrelay.control.takeover import TakeoverStateMachine
from callrelay.engine.connection import (
    LifecycleEvent,
    SessionConnection,
    SessionDescriptor,
)
from callrelay.engine.events import EventKind, InboundEvent
from callrelay.engine.registry import ActiveSessionRegistry
from callrelay.engine.retry import ReconnectPolicy
from callrelay.engine.tools import ToolContext, ToolRegistry
from callrelay.engine.transport import EngineConnector
from callrelay.errors import (
    EngineConnectionError,
    NotConnectedError,
    StateNotFoundError,
    UnknownIdentityError,
)
from callrelay.state.models import (
    ControlOwner,
    ControlState,
    ConversationSession,
    SessionStatus,
    TranscriptEntry,
)
from callrelay.state.store import ConversationStateStore

logger = get_logger(__name__)

DEFAULT_HUMAN_AGENT = "human-agent"
SNAPSHOT_LIMIT = 50


class TransferToHumanArgs(BaseModel):
    agent_name: str | None = None
    reason: str | None = None


def _session_payload(session: ConversationSession) -> dict[str, Any]:
    payload = session.to_wire()
    if not session.transcript:
        payload.pop("transcript", None)
    return payload


class SessionCoordinator:
    def __init__(
        self,
        *,
        store: ConversationStateStore,
        registry: ActiveSessionRegistry,
        dispatcher: BroadcastDispatcher,
        takeover: TakeoverStateMachine,
        assembler: ContextAssembler,
        resolver: LeadResolver,
        connector: EngineConnector,
        gateway: ChannelGateway | None = None,
        persistence: PersistenceService | None = None,
        tools: ToolRegistry | None = None,
        policy: ReconnectPolicy | None = None,
        clock: Clock | None = None,
        id_factory: Callable[[], str] | None = None,
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.takeover_machine = takeover
        self.assembler = assembler
        self.resolver = resolver
        self.connector = connector
        self.gateway = gateway
        self.persistence = persistence
        self.tools = tools or ToolRegistry()
        self.policy = policy or ReconnectPolicy()
        self.clock = clock or SystemClock()
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)

        if "transfer_to_human" not in self.tools:
            self.tools.register(
                "transfer_to_human",
                self._transfer_to_human,
                description="Hand the conversation to a human agent",
            )
        if self.dispatcher.snapshot_provider is None:
            self.dispatcher.snapshot_provider = self.snapshot

    # ------------------------------------------------------------------ #
    # Session lifecycle
    # ------------------------------------------------------------------ #
    async def start_session(
        self,
        channel_identity: str,
        *,
        channel_config: dict[str, Any] | None = None,
        first_message_hint: str | None = None,
        session_id: str | None = None,
    ) -> ConversationSession:
        """Resolve the caller, seed context and open the engine connection.

        Raises :class:`UnknownIdentityError` when the identity has no lead and
        :class:`EngineConnectionError` when the engine cannot be reached (the
        session is then left in ``error``).
        """
        lead = await self.resolver.resolve(channel_identity)
        if lead is None:
            raise UnknownIdentityError(channel_identity)

        session_id = session_id or self.id_factory()
        session = await self.store.create_session(
            session_id,
            lead.organization_id,
            lead_id=lead.lead_id,
            channel_identity=channel_identity,
            channel_config=channel_config,
        )
        await self._publish("session-started", session, _session_payload(session))

        snapshot = await self.assembler.build(lead.lead_id, lead.organization_id)
        dynamic_variables = {
            "organizationId": lead.organization_id,
            "leadId": lead.lead_id,
            "customerName": lead.display_name,
            "humanTakeoverAvailable": True,
            **lead.attributes,
        }
        descriptor = SessionDescriptor(
            session_id=session_id,
            organization_id=lead.organization_id,
            lead_id=lead.lead_id,
            context_text=snapshot.text,
            first_message_hint=first_message_hint,
            channel_config={**(channel_config or {}), "dynamicVariables": dynamic_variables},
        )
        connection = SessionConnection(
            descriptor,
            store=self.store,
            connector=self.connector,
            tools=self.tools,
            gateway=self.gateway,
            policy=self.policy,
            clock=self.clock,
            control_lock=self.takeover_machine.lock_for,
        )
        self._wire(connection)
        await self.registry.register(connection)
        try:
            await connection.open()
        except EngineConnectionError:
            await self.registry.remove(session_id)
            raise
        return await self.store.require(session_id)

    async def complete_session(
        self, session_id: str, *, status: SessionStatus = SessionStatus.COMPLETED
    ) -> ConversationSession:
        """Close the engine side, mark the session ended and hand it to persistence."""
        connection = await self.registry.remove(session_id)
        if connection is not None:
            await connection.close("Session completed")

        existing = await self.store.require(session_id)
        if existing.ended_at is not None:
            logger.info("Session already completed", extra={"session_id": session_id})
            return await self.store.require(session_id, include_transcript=True)

        await self.store.put(
            session_id, {"status": status, "ended_at": self.clock.now()}, create=False
        )
        session = await self.store.require(session_id, include_transcript=True)
        if self.persistence is not None:
            await self.persistence.save_session(session)
        logger.keyinfo(
            "Session ended with %d transcript entries",
            len(session.transcript),
            extra={"session_id": session_id},
        )
        await self._publish("session-ended", session, _session_payload(session))
        return session

    async def shutdown(self) -> None:
        await self.registry.close_all()
        await self.dispatcher.close_all()

    # ------------------------------------------------------------------ #
    # Conversation traffic
    # ------------------------------------------------------------------ #
    def _connection(self, session_id: str) -> SessionConnection:
        connection = self.registry.get(session_id)
        if connection is None:
            raise NotConnectedError(session_id)
        return connection

    async def handle_customer_text(self, session_id: str, text: str) -> TranscriptEntry:
        await self.store.require(session_id)
        return await self._connection(session_id).receive_customer_text(text)

    async def send_human_message(
        self, session_id: str, agent_id: str, text: str
    ) -> TranscriptEntry:
        await self.store.require(session_id)
        return await self._connection(session_id).send_human_message(agent_id, text)

    async def takeover(
        self, session_id: str, agent_id: str, reason: str | None = None
    ) -> ControlState:
        return await self.takeover_machine.takeover(session_id, agent_id, reason)

    async def release(self, session_id: str, reason: str | None = None) -> ControlState:
        return await self.takeover_machine.release(session_id, reason)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    async def get_session(
        self, session_id: str, *, include_transcript: bool = True
    ) -> ConversationSession | None:
        return await self.store.get(session_id, include_transcript=include_transcript)

    async def get_transcript(self, session_id: str) -> list[TranscriptEntry]:
        await self.store.require(session_id)
        return await self.store.get_transcript(session_id)

    async def list_sessions(self, organization_id: str, limit: int = 50) -> list[ConversationSession]:
        return await self.store.list_by_org(organization_id, limit=limit)

    async def latest_for_identity(self, channel_identity: str) -> ConversationSession | None:
        return await self.store.latest_for_identity(channel_identity)

    async def snapshot(
        self, organization_id: str, session_filter: str | None = None
    ) -> list[BroadcastEvent]:
        """Current-state events for a (re)subscribing dashboard."""
        if session_filter:
            session = await self.store.get(session_filter, include_transcript=True)
            if session is None or session.organization_id != organization_id:
                return []
            sessions = [session]
        else:
            sessions = await self.store.list_by_org(organization_id, limit=SNAPSHOT_LIMIT)
        return [
            make_event(
                "session-snapshot",
                organization_id=organization_id,
                session_id=session.id,
                payload=_session_payload(session),
            )
            for session in sessions
        ]

    # ------------------------------------------------------------------ #
    # Connection wiring
    # ------------------------------------------------------------------ #
    def _wire(self, connection: SessionConnection) -> None:
        connection.on_transcript(self._on_transcript)
        connection.on(EventKind.TRANSCRIPT_PARTIAL, self._on_partial)
        connection.on_lifecycle(self._on_lifecycle)

    async def _on_transcript(self, connection: SessionConnection, entry: TranscriptEntry) -> None:
        await self.dispatcher.publish(
            make_event(
                "transcript-entry",
                organization_id=connection.organization_id,
                session_id=connection.session_id,
                payload=entry.to_wire(),
            )
        )

    async def _on_partial(self, connection: SessionConnection, event: InboundEvent) -> None:
        await self.dispatcher.publish(
            make_event(
                "transcript-partial",
                organization_id=connection.organization_id,
                session_id=connection.session_id,
                payload={"text": getattr(event, "text", "")},
            )
        )

    async def _on_lifecycle(
        self, connection: SessionConnection, event: LifecycleEvent, details: dict[str, Any]
    ) -> None:
        await self.dispatcher.publish(
            make_event(
                "engine-status",
                organization_id=connection.organization_id,
                session_id=connection.session_id,
                payload={"status": event.value, **details},
            )
        )
        if event is LifecycleEvent.FAILED:
            await self.registry.remove(connection.session_id)
            await self.dispatcher.publish(
                make_event(
                    "session-error",
                    organization_id=connection.organization_id,
                    session_id=connection.session_id,
                    payload={"error": details.get("reason")},
                )
            )
        elif event is LifecycleEvent.CLOSED and details.get("remote"):
            try:
                await self.complete_session(connection.session_id)
            except StateNotFoundError:
                logger.warning(
                    "Engine ended a session that already expired",
                    extra={"session_id": connection.session_id},
                )

    async def _publish(
        self, etype: str, session: ConversationSession, payload: dict[str, Any]
    ) -> None:
        await self.dispatcher.publish(
            make_event(
                etype, organization_id=session.organization_id, session_id=session.id, payload=payload
            )
        )

    async def _transfer_to_human(
        self, args: TransferToHumanArgs, context: ToolContext
    ) -> dict[str, Any]:
        current = await self.takeover_machine.current(context.session_id)
        if current.owner == ControlOwner.HUMAN:
            return {"success": True, "message": "already with a human agent"}

        agent_id = args.agent_name or DEFAULT_HUMAN_AGENT
        await self.takeover_machine.takeover(
            context.session_id,
            agent_id,
            args.reason or "transfer requested by assistant",
            keep_human_owner=True,
        )
        return {"success": True, "message": "Call transferred to human agent"}
