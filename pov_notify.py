#!/usr/bin/env python3
"""
POV Router Notification Hub
Version: 1.0.0

Typed outbound channel: every state change becomes a Notification broadcast to all
subscribers. No acknowledgment, no backpressure; a subscriber whose buffer is full
is dropped.
"""

import time
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

NOTIFY_PLAYERS = "players"
NOTIFY_STATE = "state"
NOTIFY_MAPPING = "mapping"
NOTIFY_PING = "ping"


@dataclass(frozen=True)
class Notification:
    """Tagged outbound record."""
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_wire(self) -> Dict[str, Any]:
        """Dashboard format: {"type": kind, ...payload}."""
        message = {"type": self.kind}
        message.update(self.payload)
        return message


class Subscription:
    """One observer's bounded buffer."""

    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    async def get(self) -> Optional[Notification]:
        """Next notification, or None once the hub has dropped this observer."""
        return await self.queue.get()


class NotificationHub:
    """Fan-out of notifications to subscribed observers."""

    def __init__(self, logger: logging.Logger, buffer_size: int = 64):
        self.logger = logger
        self.buffer_size = buffer_size
        self._subscribers: List[Subscription] = []
        self.published = 0
        self.dropped = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> Subscription:
        subscription = Subscription(self.buffer_size)
        self._subscribers.append(subscription)
        self.logger.debug(f"Observer subscribed ({len(self._subscribers)} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        subscription.closed = True
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            self.logger.debug(f"Observer unsubscribed ({len(self._subscribers)} total)")

    def _drop(self, subscription: Subscription):
        """Unsubscribe and replace the backlog with a close sentinel."""
        self.unsubscribe(subscription)
        while not subscription.queue.empty():
            subscription.queue.get_nowait()
        subscription.queue.put_nowait(None)

    def publish(self, kind: str, **payload) -> int:
        """Broadcast to every subscriber; returns how many received it."""
        notification = Notification(kind, payload)
        self.published += 1
        delivered = 0

        for subscription in list(self._subscribers):
            try:
                subscription.queue.put_nowait(notification)
                delivered += 1
            except asyncio.QueueFull:
                self.dropped += 1
                self._drop(subscription)
                self.logger.warning("Dropping slow observer (notification buffer full)")
        return delivered

    async def heartbeat(self, interval: float = 2.0):
        """Publish a ping every interval seconds so dashboards can show liveness."""
        while True:
            self.publish(NOTIFY_PING, time=int(time.time() * 1000))
            await asyncio.sleep(interval)
