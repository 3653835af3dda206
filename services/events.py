# services/events.py
"""
Per-instance event channel.

Server instances publish lifecycle facts here. Subscribers get their own
bounded asyncio.Queue; a full queue drops the event for that subscriber
instead of blocking the publisher.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Events published by server instances."""
    SERVER_START = "server.start"
    SERVER_STOP = "server.stop"
    SERVER_STATUS_CHANGE = "server.status.change"
    PLAYER_CONNECT = "player.connect"
    PLAYER_DISCONNECT = "player.disconnect"
    PLAYER_PENALTY = "player.penalty"
    PLAYER_REPORT = "player.report"
    CHAT_MESSAGE = "chat.message"
    PLAYER_KILL = "player.kill"


@dataclass
class ServerEvent:
    """A single fact published on an event channel."""
    type: EventType
    server_id: str
    server_name: str
    data: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "server_id": self.server_id,
            "server_name": self.server_name,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class EventChannel:
    """Fan-out of ServerEvents to any number of queue subscribers."""

    def __init__(self, name: str = "", maxsize: int = 1000):
        self.name = name
        self.maxsize = maxsize
        self._subscribers: list[asyncio.Queue] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, maxsize: Optional[int] = None) -> asyncio.Queue:
        """Register a new subscriber queue and return it."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.maxsize if maxsize is None else maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def publish(self, event: ServerEvent) -> None:
        """Deliver an event to every subscriber without blocking."""
        logger.debug(f"[{self.name}] {event.type.value} {event.data}")
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"[{self.name}] subscriber queue full, dropped {event.type.value}")
