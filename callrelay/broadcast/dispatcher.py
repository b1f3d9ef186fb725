"""
Event Broadcast Dispatcher
==========================

Organization-scoped publish/subscribe for dashboard observers.

- Subscribers are indexed by organization; a publish only ever looks at the
  bucket for the event's organization and re-checks each subscriber's
  organization before delivery. Mismatches are dropped and logged as
  security events.
- Each subscriber has its own lock, so its stream keeps publish order.
- A failed or slow delivery removes only that subscriber. Publishers never
  see delivery errors.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from utils.ml_logging import get_logger

from callrelay.broadcast.envelopes import BroadcastEvent, make_event
from callrelay.errors import BroadcastDeliveryError

logger = get_logger(__name__)

SnapshotProvider = Callable[[str, str | None], Awaitable[list[BroadcastEvent]]]


class SubscriberTransport(Protocol):
    async def send(self, envelope: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


@dataclass(eq=False)
class BroadcastSubscriber:
    connection_id: str
    organization_id: str
    transport: SubscriberTransport
    session_filter: str | None = None
    created_at: float = field(default_factory=time.time)
    closed: bool = False
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def wants(self, event: BroadcastEvent) -> bool:
        return self.session_filter is None or self.session_filter == event.session_id


class BroadcastDispatcher:
    def __init__(
        self,
        *,
        send_timeout_seconds: float = 5.0,
        snapshot_provider: SnapshotProvider | None = None,
        max_subscribers: int | None = None,
    ):
        self.send_timeout_seconds = send_timeout_seconds
        self.snapshot_provider = snapshot_provider
        self.max_subscribers = max_subscribers
        self._subscribers: dict[str, BroadcastSubscriber] = {}
        self._by_org: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------ #
    # Subscription lifecycle
    # ------------------------------------------------------------------ #
    async def subscribe(
        self,
        organization_id: str,
        transport: SubscriberTransport,
        session_filter: str | None = None,
        *,
        replay: bool = False,
        connection_id: str | None = None,
    ) -> BroadcastSubscriber:
        """Register a subscriber and send it a ``connection-ack``.

        With ``replay`` the subscriber also receives the current-state
        snapshot for its organization (and session filter).
        """
        if not organization_id:
            raise ValueError("organization_id is required to subscribe")

        subscriber = BroadcastSubscriber(
            connection_id=connection_id or uuid.uuid4().hex,
            organization_id=organization_id,
            transport=transport,
            session_filter=session_filter,
        )
        async with subscriber._lock:
            async with self._lock:
                limit = self.max_subscribers
                if limit is not None and len(self._subscribers) >= limit:
                    raise RuntimeError(
                        f"Broadcast subscriber limit reached ({self.max_subscribers})"
                    )
                self._subscribers[subscriber.connection_id] = subscriber
                self._by_org.setdefault(organization_id, set()).add(subscriber.connection_id)

            ack = make_event(
                "connection-ack",
                organization_id=organization_id,
                session_id=session_filter,
                payload={
                    "connectionId": subscriber.connection_id,
                    "sessionFilter": session_filter,
                    "replay": replay,
                },
            )
            delivered = await self._send(subscriber, ack)

        logger.info(
            "Dashboard subscribed (org=%s, filter=%s, total=%d)",
            organization_id,
            session_filter or "*",
            len(self._subscribers),
            extra={"conn_id": subscriber.connection_id},
        )
        if delivered and replay:
            await self.replay(subscriber.connection_id)
        return subscriber

    async def replay(self, connection_id: str) -> int:
        """Send the current-state snapshot to one subscriber."""
        subscriber = self._subscribers.get(connection_id)
        if subscriber is None or self.snapshot_provider is None:
            return 0
        try:
            events = await self.snapshot_provider(
                subscriber.organization_id, subscriber.session_filter
            )
        except Exception as exc:
            logger.error(
                "Snapshot for replay failed: %s", exc, extra={"conn_id": connection_id}
            )
            return 0

        sent = 0
        for event in events:
            if not self._same_tenant(subscriber, event):
                continue
            if subscriber.wants(event) and await self._deliver(subscriber, event):
                sent += 1
        return sent

    async def set_session_filter(self, connection_id: str, session_id: str | None) -> bool:
        subscriber = self._subscribers.get(connection_id)
        if subscriber is None:
            return False
        subscriber.session_filter = session_id
        return True

    async def unsubscribe(self, connection_id: str) -> bool:
        async with self._lock:
            subscriber = self._subscribers.pop(connection_id, None)
            if subscriber is None:
                return False
            org_ids = self._by_org.get(subscriber.organization_id)
            if org_ids is not None:
                org_ids.discard(connection_id)
                if not org_ids:
                    del self._by_org[subscriber.organization_id]
        subscriber.closed = True
        try:
            await asyncio.wait_for(
                subscriber.transport.close(), timeout=self.send_timeout_seconds
            )
        except Exception as exc:
            logger.debug(
                "Error closing subscriber transport: %s", exc, extra={"conn_id": connection_id}
            )
        logger.info(
            "Dashboard unsubscribed (remaining=%d)",
            len(self._subscribers),
            extra={"conn_id": connection_id},
        )
        return True

    async def close_all(self) -> None:
        for connection_id in list(self._subscribers):
            await self.unsubscribe(connection_id)

    # ------------------------------------------------------------------ #
    # Publish
    # ------------------------------------------------------------------ #
    async def publish(self, event: BroadcastEvent) -> int:
        """Fan ``event`` out to its organization's subscribers.

        Returns the number of successful deliveries. Never raises for delivery
        failures.
        """
        if not event.organization_id:
            logger.warning(
                "SECURITY: dropping broadcast %s without organization",
                event.type,
                extra={"session_id": event.session_id or "-", "security_event": "missing_org"},
            )
            return 0

        candidates = [
            self._subscribers[cid]
            for cid in list(self._by_org.get(event.organization_id, ()))
            if cid in self._subscribers
        ]
        targets = [s for s in candidates if self._same_tenant(s, event) and s.wants(event)]
        if not targets:
            return 0

        results = await asyncio.gather(*(self._deliver(s, event) for s in targets))
        return sum(1 for ok in results if ok)

    def _same_tenant(self, subscriber: BroadcastSubscriber, event: BroadcastEvent) -> bool:
        if subscriber.organization_id == event.organization_id:
            return True
        logger.warning(
            "SECURITY: cross-organization broadcast blocked (event org=%s, subscriber org=%s)",
            event.organization_id,
            subscriber.organization_id,
            extra={
                "conn_id": subscriber.connection_id,
                "session_id": event.session_id or "-",
                "security_event": "cross_tenant_broadcast",
            },
        )
        return False

    async def _deliver(self, subscriber: BroadcastSubscriber, event: BroadcastEvent) -> bool:
        async with subscriber._lock:
            return await self._send(subscriber, event)

    async def _send(self, subscriber: BroadcastSubscriber, event: BroadcastEvent) -> bool:
        """Deliver one envelope; the caller holds the subscriber lock."""
        if subscriber.closed:
            return False
        try:
            await asyncio.wait_for(
                subscriber.transport.send(event.to_envelope()),
                timeout=self.send_timeout_seconds,
            )
            return True
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = BroadcastDeliveryError(
                subscriber.connection_id, str(exc) or type(exc).__name__
            )
            logger.warning(error.message, extra={"conn_id": subscriber.connection_id})
        subscriber.closed = True
        await self.unsubscribe(subscriber.connection_id)
        return False

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #
    def subscriber_count(self, organization_id: str | None = None) -> int:
        if organization_id is None:
            return len(self._subscribers)
        return len(self._by_org.get(organization_id, ()))

    def get_subscriber(self, connection_id: str) -> BroadcastSubscriber | None:
        return self._subscribers.get(connection_id)

    def stats(self) -> dict[str, Any]:
        return {
            "subscribers": len(self._subscribers),
            "organizations": {org: len(ids) for org, ids in self._by_org.items()},
        }
