"""
Engine socket transport.

``EngineConnector`` opens one socket per session. The websockets-based
implementation maps library close exceptions onto :class:`SocketClosed`, whose
``clean`` flag drives the reconnect decision.
"""

from __future__ import annotations

from typing import Protocol
from urllib.parse import urlparse

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode
from utils.ml_logging import get_logger
from websockets.asyncio.client import ClientConnection
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, WebSocketException
from websockets.typing import Data

from callrelay.enums.monitoring import PeerService, SpanAttr
from callrelay.errors import EngineConnectionError

logger = get_logger(__name__)
tracer = trace.get_tracer(__name__)

CLEAN_CLOSE_CODE = 1000


class SocketClosed(EngineConnectionError):
    """The engine socket closed; ``clean`` is False for unexpected closes."""

    code = "socket_closed"

    def __init__(self, clean: bool, close_code: int | None = None, reason: str = ""):
        kind = "clean" if clean else "unexpected"
        super().__init__(f"Engine socket closed ({kind}, code={close_code}): {reason}")
        self.clean = clean
        self.close_code = close_code
        self.reason = reason


class EngineSocket(Protocol):
    async def send(self, message: str) -> None: ...

    async def recv(self) -> Data: ...

    async def close(self, code: int = CLEAN_CLOSE_CODE, reason: str = "") -> None: ...


class EngineConnector(Protocol):
    async def __call__(self, session_id: str) -> EngineSocket: ...


def _closed_from(exc: ConnectionClosed) -> SocketClosed:
    frame = exc.rcvd or exc.sent
    return SocketClosed(
        clean=isinstance(exc, ConnectionClosedOK),
        close_code=frame.code if frame else None,
        reason=frame.reason if frame else str(exc),
    )


class WebSocketEngineSocket:
    def __init__(self, connection: ClientConnection):
        self._connection = connection

    async def send(self, message: str) -> None:
        try:
            await self._connection.send(message)
        except ConnectionClosed as exc:
            raise _closed_from(exc) from exc

    async def recv(self) -> Data:
        try:
            return await self._connection.recv()
        except ConnectionClosed as exc:
            raise _closed_from(exc) from exc

    async def close(self, code: int = CLEAN_CLOSE_CODE, reason: str = "") -> None:
        await self._connection.close(code=code, reason=reason)


class WebSocketEngineConnector:
    """Opens engine sockets with the ``websockets`` asyncio client."""

    def __init__(
        self,
        url: str,
        *,
        api_key: str | None = None,
        extra_headers: dict[str, str] | None = None,
        max_message_bytes: int = 2**20,
    ):
        if not url:
            raise ValueError("Engine websocket URL is required")
        self.url = url
        self.api_key = api_key
        self.extra_headers = dict(extra_headers or {})
        self.max_message_bytes = max_message_bytes

    def _headers(self, session_id: str) -> dict[str, str]:
        headers = {"X-Session-Id": session_id, **self.extra_headers}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def __call__(self, session_id: str) -> WebSocketEngineSocket:
        parsed = urlparse(self.url)
        with tracer.start_as_current_span(
            "Engine.CONNECT",
            kind=SpanKind.CLIENT,
            attributes={
                SpanAttr.PEER_SERVICE.value: PeerService.CONVERSATION_ENGINE,
                SpanAttr.SERVER_ADDRESS.value: parsed.hostname or "",
                SpanAttr.SESSION_ID.value: session_id,
            },
        ) as span:
            try:
                connection = await ws_connect(
                    self.url,
                    additional_headers=self._headers(session_id),
                    max_size=self.max_message_bytes,
                    open_timeout=None,
                )
            except (WebSocketException, OSError) as exc:
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                raise EngineConnectionError(
                    f"Failed to establish engine connection: {exc}"
                ) from exc
            span.set_status(Status(StatusCode.OK))
        logger.debug("Engine socket opened", extra={"session_id": session_id})
        return WebSocketEngineSocket(connection)
