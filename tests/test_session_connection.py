"""
Tests for SessionConnection.

Covers:
- Handshake, session-init and status transitions
- Built-in handling of inbound events and handler dispatch
- Control-owner gating of customer-facing content
- Reconnection with backoff, exhaustion and clean closes
"""

import asyncio

import pytest

from callrelay.engine.connection import (
    ConnectionState,
    LifecycleEvent,
    SessionConnection,
    SessionDescriptor,
)
from callrelay.engine.events import (
    AgentResponse,
    EngineError,
    EventKind,
    Heartbeat,
    ToolCallRequest,
    TranscriptFinal,
    UnknownEvent,
    UserText,
)
from callrelay.engine.retry import ReconnectPolicy
from callrelay.engine.tools import ToolRegistry
from callrelay.engine.transport import SocketClosed
from callrelay.errors import ControlOwnershipError, EngineConnectionError, NotConnectedError
from callrelay.state.models import ControlOwner, SessionStatus, Speaker


@pytest.fixture
async def make_connection(store, connector, gateway, clock):
    await store.create_session("s1", "org-a", lead_id="lead-1")
    created: list[SessionConnection] = []

    def _make(session_id: str = "s1", *, tools=None, policy=None, engine=None):
        connection = SessionConnection(
            SessionDescriptor(
                session_id=session_id,
                organization_id="org-a",
                lead_id="lead-1",
                context_text="Customer name: Ada",
            ),
            store=store,
            connector=engine or connector,
            tools=tools,
            gateway=gateway,
            policy=policy or ReconnectPolicy(max_attempts=3, handshake_timeout_seconds=0.5),
            clock=clock,
        )
        created.append(connection)
        return connection

    yield _make

    for connection in created:
        await connection.close("test teardown")


async def _hand_to_human(store, agent_id: str = "agent-1") -> None:
    await store.put("s1", {"control_owner": ControlOwner.HUMAN, "human_agent_id": agent_id})


class TestOpenAndClose:
    async def test_open_sends_session_init_and_activates(self, make_connection, connector, store):
        connection = make_connection()
        lifecycle = []
        connection.on_lifecycle(lambda conn, event, details: lifecycle.append(event))

        await connection.open()

        socket = connector.latest("s1")
        init = socket.sent[0]
        assert init["type"] == "session-init"
        assert init["sessionId"] == "s1"
        assert init["config"]["contextText"] == "Customer name: Ada"
        assert connection.is_connected
        assert (await store.require("s1")).status == SessionStatus.ACTIVE
        assert lifecycle == [LifecycleEvent.CONNECTED]

    async def test_failed_open_settles_session_to_error(self, make_connection, connector, store):
        connector.fail_next = 1
        connection = make_connection()
        lifecycle = []
        connection.on_lifecycle(lambda conn, event, details: lifecycle.append(event))

        with pytest.raises(EngineConnectionError):
            await connection.open()

        session = await store.require("s1")
        assert session.status == SessionStatus.ERROR
        assert "engine unavailable" in session.last_error
        assert connection.state == ConnectionState.ERROR
        assert lifecycle == [LifecycleEvent.FAILED]

        with pytest.raises(EngineConnectionError):
            await connection.open()

    async def test_handshake_is_time_bounded(self, make_connection, store):
        async def hanging_engine(session_id):
            await asyncio.Event().wait()

        connection = make_connection(
            engine=hanging_engine, policy=ReconnectPolicy(handshake_timeout_seconds=0.05)
        )

        with pytest.raises(EngineConnectionError):
            await connection.open()
        assert (await store.require("s1")).status == SessionStatus.ERROR

    async def test_send_before_open_raises_not_connected(self, make_connection):
        connection = make_connection()
        with pytest.raises(NotConnectedError):
            await connection.send(UserText(text="hello"))

    async def test_close_is_clean_and_idempotent(self, make_connection, connector):
        connection = make_connection()
        lifecycle = []
        connection.on_lifecycle(lambda conn, event, details: lifecycle.append(event))
        await connection.open()
        socket = connector.latest("s1")

        await connection.close("bye")
        await connection.close("again")

        assert socket.closed_with == (1000, "bye")
        assert connection.state == ConnectionState.CLOSED
        assert lifecycle == [LifecycleEvent.CONNECTED, LifecycleEvent.CLOSED]
        assert connector.calls == 1
        with pytest.raises(NotConnectedError):
            await connection.send(UserText(text="hello"))


class TestInboundHandling:
    async def test_final_transcript_is_recorded_for_customer(self, make_connection, store):
        connection = make_connection()
        entries = []
        connection.on_transcript(lambda conn, entry: entries.append(entry))

        await connection.dispatch(TranscriptFinal(text="I need help"))

        [entry] = await store.get_transcript("s1")
        assert entry.speaker == Speaker.CUSTOMER
        assert entry.text == "I need help"
        assert entries == [entry]

    async def test_ai_response_is_delivered_while_ai_controls(self, make_connection, store, gateway):
        connection = make_connection()

        await connection.dispatch(AgentResponse(text="Happy to help"))

        [entry] = await store.get_transcript("s1")
        assert entry.speaker == Speaker.AI
        assert entry.authoritative is True
        assert gateway.messages == [("s1", "Happy to help", "ai")]

    async def test_ai_response_during_takeover_is_not_authoritative(
        self, make_connection, store, gateway
    ):
        connection = make_connection()
        await _hand_to_human(store)

        await connection.dispatch(AgentResponse(text="Let me check"))

        [entry] = await store.get_transcript("s1")
        assert entry.authoritative is False
        assert gateway.messages == []

    async def test_heartbeat_is_acknowledged(self, make_connection, connector):
        connection = make_connection()
        await connection.open()

        await connection.dispatch(Heartbeat(sequence=3))

        assert connector.latest("s1").sent[-1] == {"type": "heartbeat-ack", "sequence": 3}

    async def test_tool_call_result_is_returned_with_call_id(
        self, make_connection, connector, wait_until
    ):
        tools = ToolRegistry()

        async def lookup(args, context):
            return {"status": "ok", "session": context.session_id, "x": args["x"]}

        tools.register("lookup", lookup)
        connection = make_connection(tools=tools)
        await connection.open()
        socket = connector.latest("s1")

        await connection.dispatch(ToolCallRequest(name="lookup", call_id="c1", args={"x": 1}))
        await connection.dispatch(ToolCallRequest(name="nope", call_id="c2"))
        await wait_until(lambda: socket.sent_types().count("tool-call-result") == 2)

        results = {m["callId"]: m["result"] for m in socket.sent if m["type"] == "tool-call-result"}
        assert results["c1"] == {"success": True, "status": "ok", "session": "s1", "x": 1}
        assert results["c2"] == {"success": False, "error": "Unknown tool: nope"}

    async def test_engine_error_is_recorded(self, make_connection, store):
        connection = make_connection()

        await connection.dispatch(EngineError(message="model overloaded", code="503"))

        session = await store.require("s1")
        assert session.last_error == "model overloaded"
        assert session.status == SessionStatus.INITIATED

    async def test_handlers_run_in_order_and_failures_are_isolated(self, make_connection):
        connection = make_connection()
        seen = []

        def broken(conn, event):
            raise RuntimeError("handler bug")

        connection.on(EventKind.RESPONSE, broken)
        connection.on(EventKind.RESPONSE, lambda conn, event: seen.append(("kind", event.type)))
        connection.on_any(lambda conn, event: seen.append(("any", event.type)))

        await connection.dispatch(AgentResponse(text="hi"))
        await connection.dispatch(UnknownEvent(type="vad-state"))

        assert seen == [("kind", "response"), ("any", "response"), ("any", "vad-state")]

    async def test_unknown_kind_handlers_are_rejected(self, make_connection):
        connection = make_connection()
        with pytest.raises(ValueError):
            connection.on(EventKind.UNKNOWN, lambda conn, event: None)

    async def test_receive_loop_skips_malformed_frames(
        self, make_connection, connector, wait_until
    ):
        connection = make_connection()
        entries = []
        connection.on_transcript(lambda conn, entry: entries.append(entry.text))
        await connection.open()
        socket = connector.latest("s1")

        socket.push("{not json")
        socket.push({"type": "transcript-final", "text": "still here"})
        await wait_until(lambda: entries == ["still here"])
        assert connection.is_connected


class TestControlGating:
    async def test_customer_facing_content_is_withheld_during_takeover(
        self, make_connection, connector, store
    ):
        connection = make_connection()
        await connection.open()
        socket = connector.latest("s1")

        await _hand_to_human(store)
        assert await connection.send(UserText(text="hello")) is False
        assert socket.sent_types() == ["session-init"]

        await store.put("s1", {"control_owner": ControlOwner.AI, "human_agent_id": None})
        assert await connection.send(UserText(text="hello")) is True
        assert socket.sent_types() == ["session-init", "user-text"]

    async def test_customer_text_goes_to_engine_as_context_during_takeover(
        self, make_connection, connector, store
    ):
        connection = make_connection()
        await connection.open()
        socket = connector.latest("s1")

        await connection.receive_customer_text("first")
        await _hand_to_human(store)
        await connection.receive_customer_text("second")

        assert socket.sent_types() == ["session-init", "user-text", "contextual-update"]
        assert socket.sent[-1]["text"] == "Customer message: second"
        assert [e.text for e in await store.get_transcript("s1")] == ["first", "second"]

    async def test_human_message_requires_control(self, make_connection):
        connection = make_connection()
        with pytest.raises(ControlOwnershipError):
            await connection.send_human_message("agent-1", "hello")

    async def test_human_message_from_other_agent_is_rejected(self, make_connection, store):
        connection = make_connection()
        await _hand_to_human(store, "agent-1")
        with pytest.raises(ControlOwnershipError):
            await connection.send_human_message("agent-2", "hello")

    async def test_human_message_is_recorded_delivered_and_shared_with_engine(
        self, make_connection, connector, store, gateway
    ):
        connection = make_connection()
        await connection.open()
        await _hand_to_human(store)

        entry = await connection.send_human_message("agent-1", "On it")

        assert entry.speaker == Speaker.HUMAN
        assert entry.agent_id == "agent-1"
        assert gateway.messages == [("s1", "On it", "human")]
        last = connector.latest("s1").sent[-1]
        assert last["type"] == "contextual-update"
        assert "On it" in last["text"]


class TestReconnection:
    async def test_unexpected_close_reconnects_and_resends_init(
        self, make_connection, connector, store, clock, wait_until
    ):
        connection = make_connection()
        events = []
        connection.on_lifecycle(lambda conn, event, details: events.append(event))
        await connection.open()
        first = connector.latest("s1")

        first.push(SocketClosed(clean=False, close_code=1006, reason="network"))
        await wait_until(lambda: LifecycleEvent.RECONNECTED in events)

        second = connector.latest("s1")
        assert second is not first
        assert second.sent[0]["type"] == "session-init"
        assert clock.sleeps == [2.0]
        assert connection.retry_state.attempt == 1
        assert events == [
            LifecycleEvent.CONNECTED,
            LifecycleEvent.RECONNECTING,
            LifecycleEvent.RECONNECTED,
        ]
        assert (await store.require("s1")).status == SessionStatus.ACTIVE

        entries = []
        connection.on_transcript(lambda conn, entry: entries.append(entry.text))
        second.push({"type": "transcript-final", "text": "back again"})
        await wait_until(lambda: entries == ["back again"])

    async def test_exhausted_reconnects_fail_only_that_session(
        self, make_connection, connector, store, clock, wait_until
    ):
        await store.create_session("s2", "org-a")
        healthy = make_connection("s2")
        await healthy.open()

        connection = make_connection()
        events = []
        connection.on_lifecycle(lambda conn, event, details: events.append((event, details)))
        await connection.open()

        connector.fail_always = True
        connector.latest("s1").push(SocketClosed(clean=False, close_code=1011))
        await wait_until(lambda: connection.state == ConnectionState.ERROR)

        assert clock.sleeps == [2.0, 4.0, 8.0]
        session = await store.require("s1")
        assert session.status == SessionStatus.ERROR
        assert "exhausted" in session.last_error
        assert events[-1][0] is LifecycleEvent.FAILED

        assert healthy.is_connected
        assert (await store.require("s2")).status == SessionStatus.ACTIVE

    async def test_attempts_are_counted_over_the_session_lifetime(
        self, make_connection, connector, store, clock, wait_until
    ):
        connection = make_connection(policy=ReconnectPolicy())
        await connection.open()

        for drop in range(1, 6):
            connector.latest("s1").push(SocketClosed(clean=False, close_code=1006))
            expected_calls = drop + 1
            await wait_until(
                lambda: connector.calls == expected_calls and connection.is_connected
            )

        assert clock.sleeps == [2.0, 4.0, 8.0, 16.0, 32.0]
        assert connection.retry_state.attempt == 5

        connector.latest("s1").push(SocketClosed(clean=False, close_code=1006))
        await wait_until(lambda: connection.state == ConnectionState.ERROR)

        assert connector.calls == 6
        assert clock.sleeps == [2.0, 4.0, 8.0, 16.0, 32.0]
        assert (await store.require("s1")).status == SessionStatus.ERROR

    async def test_remote_clean_close_does_not_reconnect(
        self, make_connection, connector, wait_until
    ):
        connection = make_connection()
        events = []
        connection.on_lifecycle(lambda conn, event, details: events.append((event, details)))
        await connection.open()

        connector.latest("s1").push(SocketClosed(clean=True, close_code=1000, reason="done"))
        await wait_until(lambda: connection.state == ConnectionState.CLOSED)

        assert events[-1] == (LifecycleEvent.CLOSED, {"reason": "done", "remote": True})
        assert connector.calls == 1
