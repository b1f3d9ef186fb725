"""
Dashboard Stream Endpoint
=========================

WS /api/v1/dashboard/stream?organization_id=&session_id=&replay=

Each socket becomes one broadcast subscriber scoped to ``organization_id``
(optionally filtered to one session). The same socket accepts operator
commands:

- ping                      -> pong
- subscribe_conversation    -> narrow the stream to ``sessionId`` (+ snapshot)
- unsubscribe_conversation  -> back to the whole organization
- takeover_conversation     -> human agent ``agentId`` takes control
- release_conversation      -> control returns to the AI
- send_human_message        -> operator reply ``text`` to the customer
- get_conversation_history  -> ``conversation-history`` with the transcript

Commands may only touch sessions of the socket's organization.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState
from opentelemetry import trace
from opentelemetry.trace import SpanKind
from pydantic import ValidationError
from utils.ml_logging import get_logger
from utils.session_context import session_context

from apps.callrelay.backend.api.v1.schemas.dashboard import DashboardCommand
from callrelay.broadcast.dispatcher import BroadcastDispatcher
from callrelay.broadcast.envelopes import make_event
from callrelay.broadcast.transports import WebSocketSubscriberTransport
from callrelay.coordinator import SessionCoordinator
from callrelay.errors import CallRelayError

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

router = APIRouter(tags=["Dashboard"])

POLICY_VIOLATION_CLOSE_CODE = 1008
TRY_AGAIN_LATER_CLOSE_CODE = 1013


class _CommandRejected(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


@router.websocket("/dashboard/stream")
async def dashboard_stream(
    websocket: WebSocket,
    organization_id: str | None = Query(None),
    session_id: str | None = Query(None),
    replay: bool = Query(False),
) -> None:
    """Stream an organization's session events to a dashboard client."""
    if not organization_id:
        await websocket.close(code=POLICY_VIOLATION_CLOSE_CODE, reason="organization_id required")
        return

    dispatcher: BroadcastDispatcher | None = getattr(websocket.app.state, "dispatcher", None)
    coordinator: SessionCoordinator | None = getattr(websocket.app.state, "coordinator", None)
    if dispatcher is None or coordinator is None:
        await websocket.close(code=TRY_AGAIN_LATER_CLOSE_CODE, reason="service starting")
        return

    await websocket.accept()
    connection_id = uuid.uuid4().hex

    async def _on_send_failure(exc: Exception) -> None:
        await dispatcher.unsubscribe(connection_id)

    transport = WebSocketSubscriberTransport(
        websocket, connection_id, on_send_failure=_on_send_failure
    )

    async with session_context(
        organization_id=organization_id,
        connection_id=connection_id,
        transport_type="DASHBOARD",
    ):
        try:
            with tracer.start_as_current_span(
                "api.v1.dashboard.subscribe",
                kind=SpanKind.SERVER,
                attributes={"organization.id": organization_id, "network.protocol.name": "websocket"},
            ):
                await dispatcher.subscribe(
                    organization_id,
                    transport,
                    session_id,
                    replay=replay,
                    connection_id=connection_id,
                )

            while _is_connected(websocket):
                raw = await websocket.receive_text()
                await _handle_message(
                    raw, organization_id, connection_id, transport, dispatcher, coordinator
                )
        except WebSocketDisconnect as exc:
            level = logger.info if exc.code in (1000, 1001) else logger.warning
            level("Dashboard disconnected (code=%s)", exc.code, extra={"conn_id": connection_id})
        except Exception as exc:
            logger.error("Dashboard stream error: %s", exc, extra={"conn_id": connection_id})
            raise
        finally:
            if not await dispatcher.unsubscribe(connection_id):
                await transport.close()


def _is_connected(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


async def _reply(
    transport: WebSocketSubscriberTransport,
    etype: str,
    organization_id: str,
    session_id: str | None,
    payload: dict[str, Any],
) -> None:
    event = make_event(etype, organization_id=organization_id, session_id=session_id, payload=payload)
    await transport.send(event.to_envelope())


async def _handle_message(
    raw: str,
    organization_id: str,
    connection_id: str,
    transport: WebSocketSubscriberTransport,
    dispatcher: BroadcastDispatcher,
    coordinator: SessionCoordinator,
) -> None:
    try:
        command = DashboardCommand.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        logger.debug("Rejected dashboard message: %s", exc, extra={"conn_id": connection_id})
        await _reply(
            transport,
            "error",
            organization_id,
            None,
            {"error": "invalid_message", "message": "Unrecognized dashboard message"},
        )
        return

    try:
        await _dispatch_command(
            command, organization_id, connection_id, transport, dispatcher, coordinator
        )
    except _CommandRejected as exc:
        await _reply(
            transport,
            "error",
            organization_id,
            command.session_id,
            {"error": exc.code, "message": exc.message, "command": command.type},
        )
    except CallRelayError as exc:
        await _reply(
            transport,
            "error",
            organization_id,
            command.session_id,
            {**exc.to_dict(), "command": command.type},
        )


async def _require_session(
    coordinator: SessionCoordinator, command: DashboardCommand, organization_id: str
) -> str:
    if not command.session_id:
        raise _CommandRejected("missing_session_id", f"{command.type} requires sessionId")
    session = await coordinator.get_session(command.session_id, include_transcript=False)
    if session is None:
        raise _CommandRejected("session_not_found", f"Session {command.session_id} not found")
    if session.organization_id != organization_id:
        logger.warning(
            "SECURITY: dashboard command for another organization's session",
            extra={
                "session_id": command.session_id,
                "organization_id": organization_id,
                "security_event": "cross_tenant_command",
            },
        )
        # Same answer as a missing session
        raise _CommandRejected("session_not_found", f"Session {command.session_id} not found")
    return command.session_id


async def _dispatch_command(
    command: DashboardCommand,
    organization_id: str,
    connection_id: str,
    transport: WebSocketSubscriberTransport,
    dispatcher: BroadcastDispatcher,
    coordinator: SessionCoordinator,
) -> None:
    if command.type == "ping":
        await _reply(transport, "pong", organization_id, None, {})
        return

    if command.type == "unsubscribe_conversation":
        await dispatcher.set_session_filter(connection_id, None)
        return

    session_id = await _require_session(coordinator, command, organization_id)

    if command.type == "subscribe_conversation":
        await dispatcher.set_session_filter(connection_id, session_id)
        await dispatcher.replay(connection_id)

    elif command.type == "takeover_conversation":
        if not command.agent_id:
            raise _CommandRejected("missing_agent_id", "takeover_conversation requires agentId")
        await coordinator.takeover(session_id, command.agent_id, command.reason)

    elif command.type == "release_conversation":
        await coordinator.release(session_id, command.reason)

    elif command.type == "send_human_message":
        if not command.agent_id or not command.text:
            raise _CommandRejected(
                "invalid_message", "send_human_message requires agentId and text"
            )
        await coordinator.send_human_message(session_id, command.agent_id, command.text)

    elif command.type == "get_conversation_history":
        entries = await coordinator.get_transcript(session_id)
        await _reply(
            transport,
            "conversation-history",
            organization_id,
            session_id,
            {"entries": [e.to_wire() for e in entries]},
        )
