"""
Switch Events - notification boundary of the engine

Every state change a user should see is emitted here:
  check_started     a deadline elapsed, activity is being checked
  timer_reset       activity found (or reported), new deadline armed
  switch_triggered  no activity, sweep plan prepared for signing

The stream keeps the most recent events in memory and fans each one out
to per-user subscribers (the WebSocket endpoint holds one queue per
connection). The transport layer decides how to deliver; this module only
guarantees emit() never raises into the engine.
"""

import time
import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional

from .rules import SWITCH_RULES

logger = logging.getLogger("deadhand.events")


class NotificationSink(ABC):

    @abstractmethod
    async def emit(self, user_address: str, event_type: str, payload: dict) -> None:
        ...


@dataclass
class SwitchEvent:
    user_address: str
    event_type: str
    payload: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.event_type,
            "user_address": self.user_address,
            "data": to_json_safe(self.payload),
            "timestamp": self.timestamp,
        }


def to_json_safe(obj: Any) -> Any:
    """Integers beyond JS safe range (wei amounts) become strings."""
    if isinstance(obj, bool) or obj is None:
        return obj
    if isinstance(obj, int):
        return str(obj) if abs(obj) > 2 ** 53 else obj
    if isinstance(obj, dict):
        return {k: to_json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_json_safe(v) for v in obj]
    return obj


class EventStream(NotificationSink):
    """In-memory event stream with per-user subscriber queues."""

    def __init__(self, max_events: int = SWITCH_RULES.EVENT_STREAM_SIZE, queue_size: int = 100):
        self.max_events = max_events
        self.queue_size = queue_size
        self.events: list[SwitchEvent] = []
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self._dropped: int = 0

    async def emit(self, user_address: str, event_type: str, payload: dict) -> None:
        event = SwitchEvent(user_address=user_address, event_type=event_type, payload=payload)

        # Newest first
        self.events.insert(0, event)
        if len(self.events) > self.max_events:
            self.events = self.events[:self.max_events]

        for queue in list(self._subscribers.get(user_address, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                self._dropped += 1
                logger.warning(f"Subscriber queue full for {user_address}, dropping {event_type}")

        logger.info(f"Event {event_type} -> {user_address}")

    def subscribe(self, user_address: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[user_address].add(queue)
        return queue

    def unsubscribe(self, user_address: str, queue: asyncio.Queue):
        subs = self._subscribers.get(user_address)
        if subs is None:
            return
        subs.discard(queue)
        if not subs:
            del self._subscribers[user_address]

    def recent(self, user_address: Optional[str] = None, limit: int = 20) -> list[SwitchEvent]:
        events = self.events
        if user_address:
            events = [e for e in events if e.user_address == user_address]
        return events[:limit]

    def get_status(self) -> dict:
        return {
            "events": len(self.events),
            "subscribers": sum(len(s) for s in self._subscribers.values()),
            "dropped": self._dropped,
        }
