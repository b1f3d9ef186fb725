"""
Tests for TakeoverStateMachine.

Covers:
- AI -> human -> AI transitions, persisted and broadcast
- Idempotent repeats and agent-to-agent transfers
- Engine notification (and tolerance of a missing or broken engine link)
- Sessions that no longer exist
"""

import asyncio

import pytest

from callrelay.broadcast.transports import QueueSubscriberTransport
from callrelay.control.takeover import TakeoverStateMachine
from callrelay.engine.connection import (
    RELEASE_NOTICE,
    SessionConnection,
    SessionDescriptor,
)
from callrelay.engine.events import AgentResponse
from callrelay.errors import InvalidTransition
from callrelay.state.backends import InMemoryStateBackend
from callrelay.state.models import ControlOwner, SessionStatus
from callrelay.state.store import ConversationStateStore


def _drain(transport: QueueSubscriberTransport) -> list[dict]:
    envelopes = []
    while not transport.queue.empty():
        envelopes.append(transport.queue.get_nowait())
    return envelopes


def _event_types(transport: QueueSubscriberTransport) -> list[str]:
    return [e["type"] for e in _drain(transport) if e is not None and e["type"] != "connection-ack"]


@pytest.fixture
async def machine(store, dispatcher, registry, clock):
    await store.create_session("s1", "org-a", lead_id="lead-1")
    return TakeoverStateMachine(store, dispatcher, registry, clock=clock)


@pytest.fixture
async def observer(dispatcher):
    transport = QueueSubscriberTransport()
    await dispatcher.subscribe("org-a", transport)
    return transport


@pytest.fixture
async def live_connection(machine, store, registry, connector, clock):
    connection = SessionConnection(
        SessionDescriptor(session_id="s1", organization_id="org-a"),
        store=store,
        connector=connector,
        clock=clock,
    )
    await connection.open()
    await registry.register(connection)
    yield connection
    await connection.close()


class TestTakeover:
    async def test_takeover_hands_control_to_agent(self, machine, store, observer, clock):
        state = await machine.takeover("s1", "agent-1", "customer asked for a person")

        assert state.owner == ControlOwner.HUMAN
        assert state.human_agent_id == "agent-1"
        assert state.changed_at == clock.now()

        session = await store.require("s1")
        assert session.control_owner == ControlOwner.HUMAN
        assert session.human_agent_id == "agent-1"
        assert session.control_reason == "customer asked for a person"

        [event] = [e for e in _drain(observer) if e["type"] != "connection-ack"]
        assert event["type"] == "human-control-started"
        assert event["organizationId"] == "org-a"
        assert event["sessionId"] == "s1"
        assert event["payload"]["humanAgentId"] == "agent-1"
        assert event["payload"]["previousAgentId"] is None

    async def test_repeat_takeover_by_same_agent_is_a_no_op(self, machine, observer, clock):
        first = await machine.takeover("s1", "agent-1")
        clock.advance(10)
        second = await machine.takeover("s1", "agent-1")

        assert second == first
        assert _event_types(observer) == ["human-control-started"]

    async def test_takeover_by_another_agent_transfers_control(self, machine, store, observer):
        await machine.takeover("s1", "agent-1")
        state = await machine.takeover("s1", "agent-2")

        assert state.human_agent_id == "agent-2"
        assert (await store.require("s1")).human_agent_id == "agent-2"
        envelopes = [e for e in _drain(observer) if e["type"] != "connection-ack"]
        assert [e["type"] for e in envelopes] == ["human-control-started", "human-control-transferred"]
        assert envelopes[-1]["payload"]["previousAgentId"] == "agent-1"

    async def test_concurrent_takeovers_produce_one_transition(self, machine, observer):
        states = await asyncio.gather(
            machine.takeover("s1", "agent-1"), machine.takeover("s1", "agent-1")
        )

        assert states[0] == states[1]
        assert _event_types(observer) == ["human-control-started"]

    async def test_takeover_requires_agent(self, machine):
        with pytest.raises(ValueError):
            await machine.takeover("s1", "")

    async def test_takeover_of_missing_session_is_invalid(self, machine):
        with pytest.raises(InvalidTransition):
            await machine.takeover("gone", "agent-1")


class TestRelease:
    async def test_release_returns_control_to_ai(self, machine, store, observer):
        await machine.takeover("s1", "agent-1")
        state = await machine.release("s1", "resolved")

        assert state.owner == ControlOwner.AI
        assert state.human_agent_id is None
        session = await store.require("s1")
        assert session.control_owner == ControlOwner.AI
        assert session.human_agent_id is None

        envelopes = [e for e in _drain(observer) if e["type"] != "connection-ack"]
        assert envelopes[-1]["type"] == "human-control-ended"
        assert envelopes[-1]["payload"]["previousAgentId"] == "agent-1"

    async def test_release_while_ai_controls_is_a_no_op(self, machine, observer):
        state = await machine.release("s1")

        assert state.owner == ControlOwner.AI
        assert _event_types(observer) == []

    async def test_release_of_missing_session_is_invalid(self, machine):
        with pytest.raises(InvalidTransition):
            await machine.release("gone")

    @pytest.mark.parametrize(
        "steps,expected_owner,expected_agent",
        [
            (["t:a1", "r", "t:a2"], ControlOwner.HUMAN, "a2"),
            (["t:a1", "t:a1", "r", "r"], ControlOwner.AI, None),
            (["r", "t:a1", "t:a2", "t:a1"], ControlOwner.HUMAN, "a1"),
            (["t:a1", "t:a2", "r"], ControlOwner.AI, None),
        ],
    )
    async def test_any_sequence_ends_in_last_requested_owner(
        self, machine, store, steps, expected_owner, expected_agent
    ):
        for step in steps:
            if step == "r":
                await machine.release("s1")
            else:
                await machine.takeover("s1", step.split(":", 1)[1])

        session = await store.require("s1")
        assert session.control_owner == expected_owner
        assert session.human_agent_id == expected_agent

    async def test_current_reports_state(self, machine):
        assert (await machine.current("s1")).owner == ControlOwner.AI
        await machine.takeover("s1", "agent-1")
        assert (await machine.current("s1")).owner == ControlOwner.HUMAN
        with pytest.raises(InvalidTransition):
            await machine.current("gone")


class TestEngineNotification:
    async def test_engine_is_told_about_takeover_and_release(
        self, machine, live_connection, connector
    ):
        socket = connector.latest("s1")

        await machine.takeover("s1", "agent-1")
        await machine.takeover("s1", "agent-2")
        await machine.release("s1")

        updates = [m["text"] for m in socket.sent if m["type"] == "contextual-update"]
        assert len(updates) == 2
        assert "agent-1" in updates[0]
        assert updates[1] == RELEASE_NOTICE

    async def test_broken_engine_link_does_not_block_takeover(
        self, machine, store, registry, connector, clock
    ):
        unopened = SessionConnection(
            SessionDescriptor(session_id="s1", organization_id="org-a"),
            store=store,
            connector=connector,
            clock=clock,
        )
        await registry.register(unopened)

        state = await machine.takeover("s1", "agent-1")

        assert state.owner == ControlOwner.HUMAN
        assert (await store.require("s1")).is_human_controlled


class YieldingBackend(InMemoryStateBackend):
    """Gives up the event loop on every read, like a networked store would."""

    async def get_hash(self, key):
        await asyncio.sleep(0)
        return await super().get_hash(key)

    async def incr(self, key, ttl_seconds=None):
        await asyncio.sleep(0)
        return await super().incr(key, ttl_seconds)


class OwnerAtDeliveryGateway:
    """Records who controlled the session at the moment each message went out."""

    def __init__(self, store):
        self.store = store
        self.deliveries: list[tuple[str, ControlOwner]] = []

    async def deliver(self, session, text, speaker):
        current = await self.store.require(session.id)
        self.deliveries.append((text, current.control_owner))


class TestResponseGating:
    @pytest.fixture
    async def slow_store(self, clock):
        store = ConversationStateStore(YieldingBackend(clock), clock=clock)
        await store.create_session("s1", "org-a", lead_id="lead-1")
        return store

    def _connection(self, store, connector, clock, machine, gateway):
        return SessionConnection(
            SessionDescriptor(session_id="s1", organization_id="org-a"),
            store=store,
            connector=connector,
            gateway=gateway,
            clock=clock,
            control_lock=machine.lock_for,
        )

    async def test_ai_reply_is_never_delivered_after_takeover(
        self, slow_store, dispatcher, registry, connector, clock
    ):
        machine = TakeoverStateMachine(slow_store, dispatcher, registry, clock=clock)
        gateway = OwnerAtDeliveryGateway(slow_store)
        connection = self._connection(slow_store, connector, clock, machine, gateway)

        reply = asyncio.create_task(connection.dispatch(AgentResponse(text="AI speaking")))
        await asyncio.sleep(0)
        await machine.takeover("s1", "a1")
        await reply

        assert (await slow_store.require("s1")).control_owner == ControlOwner.HUMAN
        assert all(owner == ControlOwner.AI for _, owner in gateway.deliveries)
        [entry] = await slow_store.get_transcript("s1")
        assert entry.authoritative is bool(gateway.deliveries)

    async def test_reply_after_takeover_is_withheld(
        self, slow_store, dispatcher, registry, connector, clock
    ):
        machine = TakeoverStateMachine(slow_store, dispatcher, registry, clock=clock)
        gateway = OwnerAtDeliveryGateway(slow_store)
        connection = self._connection(slow_store, connector, clock, machine, gateway)

        await machine.takeover("s1", "a1")
        await connection.dispatch(AgentResponse(text="AI speaking"))

        assert gateway.deliveries == []
        [entry] = await slow_store.get_transcript("s1")
        assert entry.authoritative is False


class TestEndedSessions:
    @pytest.mark.parametrize("status", [SessionStatus.COMPLETED, SessionStatus.ERROR])
    async def test_ended_session_cannot_change_hands(self, machine, store, observer, status):
        await store.put("s1", {"status": status})

        with pytest.raises(InvalidTransition):
            await machine.takeover("s1", "agent-1")
        with pytest.raises(InvalidTransition):
            await machine.release("s1")

        assert (await machine.current("s1")).owner == ControlOwner.AI
        assert _event_types(observer) == []
