# services/collaborators.py
"""
Interfaces to the services that live outside the RCON core.

Player persistence, event/penalty history, geolocation and staff
notifications are reached only through these interfaces. In-process
defaults are provided so the service runs without a database.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Origin:
    """Who issued a moderation action."""
    client_id: int
    name: str


SYSTEM_ORIGIN = Origin(client_id=0, name="System")


class ModerationType(Enum):
    """Kinds of moderation action applied to a player."""
    KICK = "kick"
    BAN = "ban"
    TEMP_BAN = "temp_ban"
    REPORT = "report"


@dataclass
class PenaltyRecord:
    """A moderation action to be stored by the event recorder."""
    type: ModerationType
    server_id: str
    target_id: Optional[int]
    target_name: str
    target_guid: str
    origin: Origin
    reason: str
    duration: Optional[int] = None  # seconds, temp bans only
    created: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class PlayerRecord:
    """Persisted identity of a player."""
    id: int
    guid: str
    name: str
    permission_level: int = 0
    country: Optional[str] = None
    metadata: dict = field(default_factory=dict)


class PlayerDirectory(ABC):
    """Resolves players to persisted records."""

    @abstractmethod
    async def resolve_player(self, guid: str, name: str, ip: Optional[str] = None,
                             country: Optional[str] = None) -> PlayerRecord:
        """Find or create the persisted record for a player."""
        pass

    @abstractmethod
    async def get_metadata(self, player_id: int, key: str) -> Any:
        """Read one metadata value for a player, None if unset."""
        pass

    @abstractmethod
    async def set_metadata(self, player_id: int, key: str, value: Any) -> None:
        """Store one metadata value for a player."""
        pass


class EventRecorder(ABC):
    """Stores lifecycle facts and penalties."""

    # Event type constants
    EVENT_PLAYER_CONNECT = 'player_connect'
    EVENT_PLAYER_DISCONNECT = 'player_disconnect'
    EVENT_SERVER_START = 'server_start'
    EVENT_SERVER_STOP = 'server_stop'
    EVENT_SERVER_STATUS = 'server_status_change'

    @abstractmethod
    async def record_event(self, event_type: str, server_id: str,
                           player_id: Optional[int] = None,
                           data: Optional[dict] = None) -> None:
        pass

    @abstractmethod
    async def record_penalty(self, penalty: PenaltyRecord) -> None:
        pass


class GeoLocator(ABC):
    """Looks up where an IP address is."""

    @abstractmethod
    async def lookup(self, ip: str) -> Optional[dict]:
        """Return {"country": ..., "country_code": ...} or None."""
        pass


class StaffNotifier(ABC):
    """Delivers messages to the staff channel."""

    @abstractmethod
    async def notify(self, title: str, message: str) -> bool:
        pass


class InMemoryPlayerDirectory(PlayerDirectory):
    """Player directory kept in process memory, keyed by GUID."""

    def __init__(self):
        self._players: dict[str, PlayerRecord] = {}
        self._by_id: dict[int, PlayerRecord] = {}
        self._next_id = 1

    async def resolve_player(self, guid: str, name: str, ip: Optional[str] = None,
                             country: Optional[str] = None) -> PlayerRecord:
        record = self._players.get(guid)
        if record is None:
            record = PlayerRecord(id=self._next_id, guid=guid, name=name, country=country)
            self._next_id += 1
            self._players[guid] = record
            self._by_id[record.id] = record
            logger.debug(f"Created player record {record.id} for {name} ({guid})")
        else:
            record.name = name
            if country:
                record.country = country
        return record

    async def get_metadata(self, player_id: int, key: str) -> Any:
        record = self._by_id.get(player_id)
        if record is None:
            return None
        return record.metadata.get(key)

    async def set_metadata(self, player_id: int, key: str, value: Any) -> None:
        record = self._by_id.get(player_id)
        if record is None:
            raise KeyError(f"Unknown player id: {player_id}")
        record.metadata[key] = value


class LoggingEventRecorder(EventRecorder):
    """Event recorder that logs and keeps a bounded in-memory history."""

    def __init__(self, history_size: int = 1000):
        self.events: deque = deque(maxlen=history_size)
        self.penalties: deque = deque(maxlen=history_size)

    async def record_event(self, event_type: str, server_id: str,
                           player_id: Optional[int] = None,
                           data: Optional[dict] = None) -> None:
        self.events.append({
            "type": event_type,
            "server_id": server_id,
            "player_id": player_id,
            "data": data or {},
            "created": datetime.now(timezone.utc),
        })
        logger.info(f"Event {event_type} on {server_id} (player={player_id})")

    async def record_penalty(self, penalty: PenaltyRecord) -> None:
        self.penalties.append(penalty)
        logger.info(
            f"Penalty {penalty.type.value} on {penalty.server_id}: {penalty.target_name} "
            f"by {penalty.origin.name} ({penalty.reason})"
        )
