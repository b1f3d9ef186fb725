"""
Subscriber transports for the broadcast dispatcher.

``WebSocketSubscriberTransport`` gives each dashboard socket a bounded send
queue drained by its own sender task, so one slow browser never blocks a
publish. When the queue is full the oldest message is dropped.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import WebSocket
from fastapi.websockets import WebSocketState
from utils.ml_logging import get_logger

logger = get_logger(__name__)

SEND_QUEUE_MAXSIZE = 100


class TransportClosedError(RuntimeError):
    pass


class WebSocketSubscriberTransport:
    def __init__(
        self,
        websocket: WebSocket,
        connection_id: str,
        on_send_failure: Callable[[Exception], Awaitable[None]] | None = None,
        queue_maxsize: int = SEND_QUEUE_MAXSIZE,
    ):
        self.ws = websocket
        self.connection_id = connection_id
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_maxsize)
        self._sender_task = asyncio.create_task(self._sender_loop())
        self._closed = False
        self._on_send_failure = on_send_failure

    def _connected(self) -> bool:
        return (
            self.ws.client_state == WebSocketState.CONNECTED
            and self.ws.application_state == WebSocketState.CONNECTED
        )

    async def send(self, envelope: dict[str, Any]) -> None:
        if self._closed or not self._connected():
            raise TransportClosedError("websocket_disconnected")

        message = json.dumps(envelope)
        if self._queue.full():
            try:
                self._queue.get_nowait()
                logger.debug(
                    "Send queue full; dropped oldest message",
                    extra={"conn_id": self.connection_id},
                )
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(message)

    async def _sender_loop(self) -> None:
        try:
            while True:
                message = await self._queue.get()
                if message is None:
                    return
                if not self._connected():
                    raise TransportClosedError("websocket_disconnected")
                await self.ws.send_text(message)
        except asyncio.CancelledError:
            logger.debug("Sender loop cancelled", extra={"conn_id": self.connection_id})
        except Exception as exc:
            level = logger.info if isinstance(exc, TransportClosedError) else logger.error
            level("WebSocket send failed: %s", exc, extra={"conn_id": self.connection_id})
            self._closed = True
            if self._on_send_failure is not None:
                await self._on_send_failure(exc)

    async def close(self) -> None:
        if self._closed and self._sender_task.done():
            return
        self._closed = True

        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self._queue.put_nowait(None)

        current = asyncio.current_task()
        if self._sender_task is not current and not self._sender_task.done():
            try:
                await asyncio.wait_for(self._sender_task, timeout=2.0)
            except asyncio.TimeoutError:
                self._sender_task.cancel()

        if self._connected():
            try:
                await self.ws.close()
            except Exception as exc:
                logger.debug(
                    "Error closing WebSocket: %s", exc, extra={"conn_id": self.connection_id}
                )


class QueueSubscriberTransport:
    """In-process transport; envelopes land on an ``asyncio.Queue`` (SSE, tests)."""

    def __init__(self, maxsize: int = SEND_QUEUE_MAXSIZE):
        self.queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def send(self, envelope: dict[str, Any]) -> None:
        if self.closed:
            raise TransportClosedError("transport_closed")
        if self.queue.full():
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(envelope)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.queue.full():
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(None)
