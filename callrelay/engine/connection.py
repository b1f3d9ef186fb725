"""
Session Connection Manager
==========================

One ``SessionConnection`` owns the engine socket for one session and is the
only writer of that session's transcript.

Responsibilities:
- Handshake (time-bounded) followed by ``session-init`` with the assembled context
- Receive loop: parse frames, run built-in handling, then per-kind and wildcard handlers
- Gating of customer-facing content on the current control owner (read from the store)
- Tool-call dispatch through a :class:`ToolRegistry`
- Reconnection with exponential backoff after unexpected closes; errors settle
  the session to ``status=error`` without affecting other sessions
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from utils.ml_logging import get_logger
from utils.session_context import session_context

from callrelay.clock import Clock, SystemClock
from callrelay.collaborators import ChannelGateway
from callrelay.engine.events import (
    AgentResponse,
    ContextualUpdate,
    EngineError,
    EventKind,
    Heartbeat,
    HeartbeatAck,
    InboundEvent,
    OutboundEvent,
    SessionInit,
    SessionInitConfig,
    ToolCallRequest,
    ToolCallResult,
    TranscriptFinal,
    UserAudioChunk,
    UserText,
    encode_outbound,
    is_customer_facing,
    parse_inbound,
)
from callrelay.engine.retry import ReconnectPolicy, RetryState
from callrelay.engine.tools import ToolContext, ToolRegistry
from callrelay.engine.transport import (
    CLEAN_CLOSE_CODE,
    EngineConnector,
    EngineSocket,
    SocketClosed,
)
from callrelay.errors import (
    ControlOwnershipError,
    EngineConnectionError,
    NotConnectedError,
    ProtocolError,
)
from callrelay.state.models import SessionStatus, Speaker, TranscriptEntry
from callrelay.state.store import ConversationStateStore

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    ERROR = "error"


class LifecycleEvent(str, Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(frozen=True)
class SessionDescriptor:
    """Everything needed to open (or re-open) the engine side of a session."""

    session_id: str
    organization_id: str
    lead_id: str | None = None
    context_text: str = ""
    first_message_hint: str | None = None
    channel_config: dict[str, Any] = field(default_factory=dict)


EventHandler = Callable[["SessionConnection", InboundEvent], Awaitable[None] | None]
TranscriptListener = Callable[["SessionConnection", TranscriptEntry], Awaitable[None] | None]
LifecycleListener = Callable[
    ["SessionConnection", LifecycleEvent, dict[str, Any]], Awaitable[None] | None
]

TAKEOVER_NOTICE = "Human agent {agent_id} has joined the conversation and taken control."
RELEASE_NOTICE = "AI assistant has resumed control of the conversation."


async def _invoke(callback: Callable[..., Any], *args: Any) -> None:
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class SessionConnection:
    def __init__(
        self,
        descriptor: SessionDescriptor,
        *,
        store: ConversationStateStore,
        connector: EngineConnector,
        tools: ToolRegistry | None = None,
        gateway: ChannelGateway | None = None,
        policy: ReconnectPolicy | None = None,
        clock: Clock | None = None,
        control_lock: Callable[[str], asyncio.Lock] | None = None,
    ):
        self.descriptor = descriptor
        self.store = store
        self.connector = connector
        self.tools = tools or ToolRegistry()
        self.gateway = gateway
        self.policy = policy or ReconnectPolicy()
        self.clock = clock or SystemClock()

        self.state = ConnectionState.DISCONNECTED
        self._socket: EngineSocket | None = None
        self._send_lock = asyncio.Lock()
        self._own_control_lock = asyncio.Lock()
        self._control_lock_factory = control_lock
        self._receive_task: asyncio.Task | None = None
        self._tool_tasks: set[asyncio.Task] = set()
        self._retry = RetryState()
        self._closing = False

        self._handlers: dict[EventKind, list[EventHandler]] = {}
        self._wildcard_handlers: list[EventHandler] = []
        self._transcript_listeners: list[TranscriptListener] = []
        self._lifecycle_listeners: list[LifecycleListener] = []

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #
    @property
    def session_id(self) -> str:
        return self.descriptor.session_id

    @property
    def organization_id(self) -> str:
        return self.descriptor.organization_id

    @property
    def retry_state(self) -> RetryState:
        return self._retry

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED and self._socket is not None

    def _control_lock(self) -> asyncio.Lock:
        # Same lock the takeover machine holds while it changes the owner.
        if self._control_lock_factory is not None:
            return self._control_lock_factory(self.session_id)
        return self._own_control_lock

    # ------------------------------------------------------------------ #
    # Handler registration
    # ------------------------------------------------------------------ #
    def on(self, kind: EventKind | str, handler: EventHandler) -> None:
        """Register ``handler`` for one inbound kind.

        Unknown frames are only delivered to wildcard handlers, so ``kind``
        must be one of the known inbound kinds.
        """
        kind = EventKind(kind)
        if kind is EventKind.UNKNOWN:
            raise ValueError("Unknown frames are delivered to wildcard handlers only")
        self._handlers.setdefault(kind, []).append(handler)

    def on_any(self, handler: EventHandler) -> None:
        self._wildcard_handlers.append(handler)

    def on_transcript(self, listener: TranscriptListener) -> None:
        self._transcript_listeners.append(listener)

    def on_lifecycle(self, listener: LifecycleListener) -> None:
        self._lifecycle_listeners.append(listener)

    # ------------------------------------------------------------------ #
    # Open / close
    # ------------------------------------------------------------------ #
    async def open(self) -> SessionConnection:
        """Connect, send ``session-init`` and start the receive loop."""
        if self.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            return self
        if self.state in (ConnectionState.CLOSED, ConnectionState.ERROR):
            raise EngineConnectionError(
                f"Session {self.session_id} connection is {self.state.value}; open a new session"
            )

        self.state = ConnectionState.CONNECTING
        try:
            await self._establish()
        except (EngineConnectionError, asyncio.TimeoutError, OSError) as exc:
            reason = f"Engine connection failed: {exc}"
            await self._fail(reason)
            raise EngineConnectionError(reason) from exc

        try:
            await self.store.put(self.session_id, {"status": SessionStatus.ACTIVE}, create=False)
        except Exception:
            await self.close("session state unavailable")
            raise
        self._receive_task = asyncio.create_task(
            self._receive_loop(), name=f"engine-recv-{self.session_id}"
        )
        logger.info("Engine session opened", extra={"session_id": self.session_id})
        await self._notify_lifecycle(LifecycleEvent.CONNECTED, {})
        return self

    async def _establish(self) -> None:
        """Open the socket and send ``session-init``, both under the handshake timeout."""
        timeout = self.policy.handshake_timeout_seconds
        socket = await asyncio.wait_for(self.connector(self.session_id), timeout=timeout)
        init = SessionInit(
            session_id=self.session_id,
            config=SessionInitConfig(
                context_text=self.descriptor.context_text,
                first_message_hint=self.descriptor.first_message_hint,
                channel_config=self.descriptor.channel_config,
            ),
        )
        try:
            await asyncio.wait_for(socket.send(encode_outbound(init)), timeout=timeout)
        except BaseException:
            await self._close_quietly(socket, code=1011, reason="session-init failed")
            raise
        self._socket = socket
        self.state = ConnectionState.CONNECTED

    async def close(self, reason: str = "Intentional disconnect") -> None:
        """Clean, application-initiated close. Never triggers reconnection."""
        if self.state == ConnectionState.CLOSED:
            return
        self._closing = True
        self.state = ConnectionState.CLOSED

        socket, self._socket = self._socket, None
        if socket is not None:
            await self._close_quietly(socket, code=CLEAN_CLOSE_CODE, reason=reason)

        for task in list(self._tool_tasks):
            task.cancel()
        task = self._receive_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        logger.info("Engine session closed: %s", reason, extra={"session_id": self.session_id})
        await self._notify_lifecycle(LifecycleEvent.CLOSED, {"reason": reason})

    async def _close_quietly(self, socket: EngineSocket, *, code: int, reason: str) -> None:
        try:
            await socket.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug(
                "Error closing engine socket: %s", exc, extra={"session_id": self.session_id}
            )

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #
    async def send(self, event: OutboundEvent) -> bool:
        """Forward ``event`` to the engine.

        Customer-facing content is only forwarded while the AI holds control;
        returns False when it is withheld. Raises :class:`NotConnectedError`
        while the socket is down.
        """
        if is_customer_facing(event):
            session = await self.store.get(self.session_id)
            if session is not None and session.is_human_controlled:
                logger.info(
                    "Withholding %s from engine while human agent %s is in control",
                    event.type,
                    session.human_agent_id,
                    extra={"session_id": self.session_id},
                )
                return False
        await self._send_raw(event)
        return True

    async def _send_raw(self, event: OutboundEvent) -> None:
        if not self.is_connected:
            raise NotConnectedError(self.session_id)
        async with self._send_lock:
            socket = self._socket
            if socket is None:
                raise NotConnectedError(self.session_id)
            try:
                await socket.send(encode_outbound(event))
            except SocketClosed as exc:
                raise NotConnectedError(self.session_id) from exc

    async def send_audio(self, chunk_b64: str) -> bool:
        return await self.send(UserAudioChunk(chunk=chunk_b64))

    async def send_contextual_update(self, text: str) -> None:
        await self._send_raw(ContextualUpdate(text=text))

    async def notify_takeover(self, agent_id: str) -> None:
        await self.send_contextual_update(TAKEOVER_NOTICE.format(agent_id=agent_id))

    async def notify_release(self) -> None:
        await self.send_contextual_update(RELEASE_NOTICE)

    async def receive_customer_text(self, text: str) -> TranscriptEntry:
        """Record inbound customer text (SMS) and relay it to the engine.

        While a human is in control the engine only gets it as context, so it
        does not answer.
        """
        session = await self.store.require(self.session_id)
        entry = await self._record(Speaker.CUSTOMER, text)
        if session.is_human_controlled:
            if self.is_connected:
                await self.send_contextual_update(f"Customer message: {text}")
        else:
            await self.send(UserText(text=text))
        return entry

    async def send_human_message(self, agent_id: str, text: str) -> TranscriptEntry:
        """Deliver operator-authored text to the customer and keep the engine informed."""
        async with self._control_lock():
            session = await self.store.require(self.session_id)
            if not session.is_human_controlled or session.human_agent_id != agent_id:
                raise ControlOwnershipError(self.session_id, agent_id)

            entry = await self._record(Speaker.HUMAN, text, agent_id=agent_id)
            if self.gateway is not None:
                await self.gateway.deliver(session, text, Speaker.HUMAN)
        if self.is_connected:
            try:
                await self.send_contextual_update(
                    f"Human agent {agent_id} replied to the customer: {text}"
                )
            except NotConnectedError:
                logger.warning(
                    "Engine not informed of human reply; socket down",
                    extra={"session_id": self.session_id},
                )
        return entry

    # ------------------------------------------------------------------ #
    # Receive loop
    # ------------------------------------------------------------------ #
    async def _receive_loop(self) -> None:
        async with session_context(
            session_id=self.session_id,
            transport_type="ENGINE",
            organization_id=self.organization_id,
        ):
            while not self._closing:
                socket = self._socket
                if socket is None:
                    return
                try:
                    frame = await socket.recv()
                except asyncio.CancelledError:
                    raise
                except SocketClosed as closed:
                    if self._closing:
                        return
                    if closed.clean:
                        await self._handle_remote_clean_close(closed)
                        return
                    if not await self._reconnect(str(closed)):
                        return
                    continue
                except Exception as exc:
                    logger.warning(
                        "Engine receive failed: %s", exc, extra={"session_id": self.session_id}
                    )
                    if self._closing or not await self._reconnect(str(exc)):
                        return
                    continue

                await self._dispatch_frame(frame)

    async def _handle_remote_clean_close(self, closed: SocketClosed) -> None:
        self._socket = None
        self.state = ConnectionState.CLOSED
        logger.info(
            "Engine closed the session cleanly (code=%s)",
            closed.close_code,
            extra={"session_id": self.session_id},
        )
        await self._notify_lifecycle(
            LifecycleEvent.CLOSED, {"reason": closed.reason, "remote": True}
        )

    async def _reconnect(self, reason: str) -> bool:
        """Back off and reconnect; returns False once attempts are exhausted."""
        self._socket = None
        self.state = ConnectionState.RECONNECTING
        last_error = reason
        while not self._closing:
            if self._retry.exhausted(self.policy):
                await self._fail(
                    f"Reconnect attempts exhausted ({self._retry.attempt}): {last_error}"
                )
                return False

            self._retry = self._retry.advance(self.policy, self.clock.now())
            delay = self._retry.wait_seconds(self.clock.now())
            logger.warning(
                "Engine connection lost (%s); reconnect attempt %d/%d in %.1fs",
                last_error,
                self._retry.attempt,
                self.policy.max_attempts,
                delay,
                extra={"session_id": self.session_id},
            )
            await self._notify_lifecycle(
                LifecycleEvent.RECONNECTING, {"attempt": self._retry.attempt, "delay": delay}
            )
            await self.clock.sleep(delay)
            if self._closing:
                return False

            try:
                await self._establish()
            except (EngineConnectionError, asyncio.TimeoutError, OSError) as exc:
                last_error = str(exc) or type(exc).__name__
                self.state = ConnectionState.RECONNECTING
                continue

            logger.info(
                "Engine reconnected on attempt %d",
                self._retry.attempt,
                extra={"session_id": self.session_id},
            )
            await self._notify_lifecycle(
                LifecycleEvent.RECONNECTED, {"attempt": self._retry.attempt}
            )
            return True
        return False

    async def _fail(self, reason: str) -> None:
        """Settle the session to ``error``; the failure stays local to this session."""
        self.state = ConnectionState.ERROR
        self._socket = None
        logger.error(reason, extra={"session_id": self.session_id})
        try:
            await self.store.put(
                self.session_id,
                {
                    "status": SessionStatus.ERROR,
                    "last_error": reason,
                    "error_at": self.clock.now(),
                },
                create=False,
            )
        except Exception as exc:
            logger.error(
                "Could not record engine failure in session state: %s",
                exc,
                extra={"session_id": self.session_id},
            )
        await self._notify_lifecycle(LifecycleEvent.FAILED, {"reason": reason})

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #
    async def _dispatch_frame(self, frame: Any) -> None:
        try:
            event = parse_inbound(frame)
        except ProtocolError as exc:
            logger.warning(
                "Dropping malformed engine frame: %s",
                exc.message,
                extra={"session_id": self.session_id},
            )
            return
        await self.dispatch(event)

    async def dispatch(self, event: InboundEvent) -> None:
        """Run built-in handling, then kind handlers, then wildcard handlers."""
        try:
            await self._handle_builtin(event)
        except Exception as exc:
            logger.error(
                "Built-in handling of %s failed: %s",
                event.type,
                exc,
                extra={"session_id": self.session_id},
            )

        if event.kind is EventKind.UNKNOWN:
            logger.debug("Unknown engine event type: %s", event.type)
        handlers = [*self._handlers.get(event.kind, []), *self._wildcard_handlers]
        for handler in handlers:
            try:
                await _invoke(handler, self, event)
            except Exception as exc:
                logger.error(
                    "Handler for %s failed: %s",
                    event.type,
                    exc,
                    extra={"session_id": self.session_id},
                )

    async def _handle_builtin(self, event: InboundEvent) -> None:
        if isinstance(event, TranscriptFinal):
            await self._record(Speaker.CUSTOMER, event.text)
        elif isinstance(event, AgentResponse):
            await self._handle_response(event)
        elif isinstance(event, ToolCallRequest):
            task = asyncio.create_task(self._run_tool(event))
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)
        elif isinstance(event, Heartbeat):
            await self._send_raw(HeartbeatAck(sequence=event.sequence))
        elif isinstance(event, EngineError):
            logger.error(
                "Engine reported error %s: %s",
                event.code or "-",
                event.message,
                extra={"session_id": self.session_id},
            )
            await self.store.put(
                self.session_id,
                {
                    "last_error": event.message or event.code or "engine error",
                    "error_at": self.clock.now(),
                },
                create=False,
            )

    async def _handle_response(self, event: AgentResponse) -> None:
        # The owner cannot change between the check and the delivery.
        async with self._control_lock():
            session = await self.store.require(self.session_id)
            authoritative = not session.is_human_controlled
            await self._record(Speaker.AI, event.text, authoritative=authoritative)
            if not authoritative:
                logger.warning(
                    "AI response while human agent %s is in control; recorded as non-authoritative",
                    session.human_agent_id,
                    extra={"session_id": self.session_id},
                )
                return
            if self.gateway is not None:
                await self.gateway.deliver(session, event.text, Speaker.AI)

    async def _run_tool(self, request: ToolCallRequest) -> None:
        context = ToolContext(
            session_id=self.session_id,
            organization_id=self.organization_id,
            lead_id=self.descriptor.lead_id,
        )
        result = await self.tools.execute(request.name, request.args, context)
        try:
            await self._send_raw(ToolCallResult(call_id=request.call_id, result=result))
        except NotConnectedError:
            logger.warning(
                "Dropping result for tool call %s; engine not connected",
                request.call_id,
                extra={"session_id": self.session_id},
            )

    async def _record(
        self,
        speaker: Speaker,
        text: str,
        *,
        authoritative: bool = True,
        agent_id: str | None = None,
    ) -> TranscriptEntry:
        entry = await self.store.append_transcript(
            self.session_id,
            TranscriptEntry(
                speaker=speaker,
                text=text,
                timestamp=self.clock.now(),
                authoritative=authoritative,
                agent_id=agent_id,
            ),
        )
        for listener in self._transcript_listeners:
            try:
                await _invoke(listener, self, entry)
            except Exception as exc:
                logger.error(
                    "Transcript listener failed: %s", exc, extra={"session_id": self.session_id}
                )
        return entry

    async def _notify_lifecycle(self, event: LifecycleEvent, details: dict[str, Any]) -> None:
        for listener in self._lifecycle_listeners:
            try:
                await _invoke(listener, self, event, details)
            except Exception as exc:
                logger.error(
                    "Lifecycle listener failed for %s: %s",
                    event.value,
                    exc,
                    extra={"session_id": self.session_id},
                )
