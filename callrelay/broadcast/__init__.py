"""
Event Broadcast Dispatcher: organization-scoped fan-out to dashboard subscribers.
"""

from callrelay.broadcast.dispatcher import (
    BroadcastDispatcher,
    BroadcastSubscriber,
    SubscriberTransport,
)
from callrelay.broadcast.envelopes import BroadcastEvent, make_event
from callrelay.broadcast.transports import QueueSubscriberTransport, WebSocketSubscriberTransport

__all__ = [
    "BroadcastDispatcher",
    "BroadcastEvent",
    "BroadcastSubscriber",
    "QueueSubscriberTransport",
    "SubscriberTransport",
    "WebSocketSubscriberTransport",
    "make_event",
]
