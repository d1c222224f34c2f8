"""Lifecycle event fan-out.

Delivery is at-most-once and best-effort: a subscriber that raises is logged
and skipped, the publisher never sees the error.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

EVENT_TYPES = (
    "queue.updated",
    "agent.started",
    "agent.progress",
    "agent.output",
    "agent.completed",
    "agent.blocked",
    "agent.failed",
    "ticket.updated",
    "message.created",
    "terminal.started",
    "terminal.stopped",
)

# Only delivered to clients subscribed to the ticket.
TICKET_SCOPED = frozenset({"agent.output", "message.created", "terminal.started", "terminal.stopped"})


@dataclass
class Event:
    type: str
    payload: dict[str, Any]
    ticket_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "ticket_id": self.ticket_id,
            "timestamp": self.timestamp.isoformat(),
        }


Subscriber = Callable[[Event], None]


class EventBus:
    """Synchronous publish/subscribe hub for global and ticket-scoped events.

    Global subscribers receive every event. Ticket subscribers receive only
    events published with their ticket id.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._global: list[Subscriber] = []
        self._by_ticket: dict[str, list[Subscriber]] = {}

    def subscribe(self, callback: Subscriber, ticket_id: str | None = None):
        with self._lock:
            if ticket_id is None:
                self._global.append(callback)
            else:
                self._by_ticket.setdefault(ticket_id, []).append(callback)

    def unsubscribe(self, callback: Subscriber, ticket_id: str | None = None):
        """Remove a subscription. Unknown subscriptions are ignored."""
        with self._lock:
            if ticket_id is None:
                targets = [self._global]
            else:
                targets = [self._by_ticket.get(ticket_id, [])]
            for subscribers in targets:
                if callback in subscribers:
                    subscribers.remove(callback)
            if ticket_id is not None and not self._by_ticket.get(ticket_id):
                self._by_ticket.pop(ticket_id, None)

    def publish(self, event_type: str, payload: dict[str, Any], ticket_id: str | None = None) -> Event:
        event = Event(type=event_type, payload=payload, ticket_id=ticket_id)
        with self._lock:
            subscribers = list(self._global)
            if ticket_id is not None:
                subscribers.extend(self._by_ticket.get(ticket_id, []))
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event_type)
        return event
