# services/server_instance.py
"""
One managed game server.

A ServerInstance owns the RCON client for its server, polls `status` on
a fixed cadence and reconciles the reported slots against its slot table:
new occupants are built into ActivePlayers, vanished or renamed occupants
are disconnected. Operator commands (say, kick, ban, ...) are routed to
the matching player.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from config.servers import ServerConfig
from services.collaborators import (
    EventRecorder,
    GeoLocator,
    InMemoryPlayerDirectory,
    LoggingEventRecorder,
    Origin,
    PlayerDirectory,
    StaffNotifier,
)
from services.dialects import LogEvent, LogEventType, StatusLine, get_dialect
from services.events import EventChannel, EventType, ServerEvent
from services.log_tailer import LogTailer
from services.player import ActivePlayer
from services.rcon import RCONClient, RCONError, get_rcon_client

logger = logging.getLogger(__name__)


class ServerStatus(Enum):
    """Connectivity state of a server instance."""
    OFFLINE = "offline"
    ONLINE = "online"
    ERROR = "error"


@dataclass
class ServerStats:
    """Counters kept while the instance runs."""
    connections_total: int = 0
    peak_players: int = 0
    unique_guids: set = field(default_factory=set)
    online_since: Optional[datetime] = None

    @property
    def uptime(self) -> int:
        """Seconds since the server last came online, 0 when offline."""
        if self.online_since is None:
            return 0
        return int((datetime.now(timezone.utc) - self.online_since).total_seconds())

    def to_dict(self) -> dict:
        return {
            "connections_total": self.connections_total,
            "peak_players": self.peak_players,
            "unique_players": len(self.unique_guids),
            "online_since": self.online_since.isoformat() if self.online_since else None,
            "uptime": self.uptime,
        }


class ServerInstance:
    """Polling and moderation for a single server."""

    def __init__(self, config: ServerConfig,
                 rcon: Optional[RCONClient] = None,
                 directory: Optional[PlayerDirectory] = None,
                 recorder: Optional[EventRecorder] = None,
                 geolocator: Optional[GeoLocator] = None,
                 notifier: Optional[StaffNotifier] = None,
                 poll_interval: Optional[float] = None):
        if poll_interval is None:
            from config.settings import POLL_INTERVAL
            poll_interval = POLL_INTERVAL

        self.config = config
        self.id = config.id
        self.name = config.name
        self.host = config.host
        self.port = config.port
        self.dialect = get_dialect(config.dialect)
        self.poll_interval = poll_interval

        self.rcon = rcon or get_rcon_client(self.dialect, config.host, config.rcon_port, config.rcon_password)
        self.directory = directory or InMemoryPlayerDirectory()
        self.recorder = recorder or LoggingEventRecorder()
        self.geolocator = geolocator
        self.notifier = notifier

        self.events = EventChannel(name=self.name)
        self.status = ServerStatus.OFFLINE
        self.last_error: Optional[str] = None
        self.players: dict[int, ActivePlayer] = {}
        self.stats = ServerStats()
        self.info = {
            "hostname": config.name,
            "map": None,
            "max_clients": config.max_players,
            "game_type": None,
        }

        self._poll_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._polling = False
        self._log_tailer = LogTailer(config.log_path, self.handle_log_line) if config.log_path else None

    def __repr__(self) -> str:
        return f"<ServerInstance {self.id} {self.host}:{self.port} {self.status.value}>"

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    def _publish(self, event_type: EventType, data: Optional[dict] = None) -> None:
        self.events.publish(ServerEvent(
            type=event_type,
            server_id=self.id,
            server_name=self.name,
            data=data or {},
        ))

    def _set_status(self, status: ServerStatus, reason: Optional[str] = None) -> None:
        if status == ServerStatus.ERROR:
            self.last_error = reason
        if status == self.status:
            return

        previous = self.status
        self.status = status
        if status == ServerStatus.ONLINE:
            self.stats.online_since = datetime.now(timezone.utc)
        else:
            self.stats.online_since = None

        log = logger.warning if status == ServerStatus.ERROR else logger.info
        log(f"[{self.name}] status {previous.value} -> {status.value}" + (f" ({reason})" if reason else ""))
        self._publish(EventType.SERVER_STATUS_CHANGE, {
            "old_status": previous.value,
            "new_status": status.value,
            "reason": reason,
        })

    async def _record(self, event_type: str, data: Optional[dict] = None) -> None:
        try:
            await self.recorder.record_event(event_type, self.id, data=data)
        except Exception as e:
            logger.error(f"[{self.name}] Failed to record {event_type}: {e}", exc_info=True)

    async def start(self) -> bool:
        """
        Connect, probe the server once, and begin polling.

        Returns:
            True if the server answered and polling is armed
        """
        if self.is_running():
            return True

        logger.info(f"[{self.name}] Starting server instance ({self.address}, {self.dialect.name})")

        if not self.rcon.is_connected:
            try:
                await self.rcon.connect()
            except RCONError as e:
                self._set_status(ServerStatus.ERROR, str(e))
                return False

        probe = await self.rcon.get_status()
        if not probe.success:
            logger.error(f"[{self.name}] Start probe failed: {probe.message}")
            self._set_status(ServerStatus.ERROR, probe.message)
            return False

        await self.refresh_info()
        if probe.data.get("map"):
            self.info["map"] = probe.data["map"]

        self._set_status(ServerStatus.ONLINE)
        await self._record(EventRecorder.EVENT_SERVER_START, {"hostname": self.info["hostname"]})
        self._publish(EventType.SERVER_START, {"info": dict(self.info)})

        self._poll_task = asyncio.create_task(self._poll_loop())
        if self._log_tailer is not None:
            await self._log_tailer.start()
        return True

    async def stop(self) -> None:
        """Stop polling, abandon an in-flight tick and disconnect all players."""
        was_active = self.is_running() or self.status != ServerStatus.OFFLINE

        if self._log_tailer is not None:
            await self._log_tailer.stop()

        for task in (self._poll_task, self._tick_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._tick_task = None

        for player in list(self.players.values()):
            await player.disconnect()

        self._set_status(ServerStatus.OFFLINE)
        if was_active:
            logger.info(f"[{self.name}] Server instance stopped")
            await self._record(EventRecorder.EVENT_SERVER_STOP)
            self._publish(EventType.SERVER_STOP)

    async def close(self) -> None:
        """Stop and release the RCON socket."""
        await self.stop()
        await self.rcon.disconnect()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while True:
            if self._tick_task is None or self._tick_task.done():
                self._tick_task = asyncio.create_task(self.poll())
            else:
                logger.debug(f"[{self.name}] previous poll still running, skipping tick")
            await asyncio.sleep(self.poll_interval)

    async def poll(self) -> bool:
        """
        Run one reconciliation tick.

        Returns:
            True if a status snapshot was reconciled, False if the tick was
            skipped or the server could not be queried
        """
        if self._polling:
            logger.debug(f"[{self.name}] poll already in progress")
            return False

        self._polling = True
        try:
            return await self._tick()
        except Exception as e:
            logger.error(f"[{self.name}] Error during poll: {e}", exc_info=True)
            return False
        finally:
            self._polling = False

    async def _tick(self) -> bool:
        if not self.rcon.is_connected:
            try:
                await self.rcon.connect()
            except RCONError as e:
                self._set_status(ServerStatus.ERROR, str(e))
                return False

        response = await self.rcon.get_status()
        if not response.success:
            self._set_status(ServerStatus.ERROR, response.message)
            return False

        self._set_status(ServerStatus.ONLINE)
        if response.data.get("map"):
            self.info["map"] = response.data["map"]

        await self._reconcile(response.data["clients"])
        return True

    async def _reconcile(self, lines: list[StatusLine]) -> None:
        reported = {line.slot: line for line in lines if not line.is_placeholder}

        for slot, player in list(self.players.items()):
            line = reported.get(slot)
            if line is None or line.name != player.reported_name:
                await player.disconnect()

        for slot, line in reported.items():
            player = self.players.get(slot)
            if player is not None:
                player.refresh(line)
                continue

            player = ActivePlayer(self, line)
            if not await player.build():
                continue

            self.players[slot] = player
            self.stats.connections_total += 1
            self.stats.unique_guids.add(player.guid)
            self.stats.peak_players = max(self.stats.peak_players, len(self.players))
            logger.info(f"[{self.name}] {player.name} joined slot {slot} ({player.guid_state.value})")
            self._publish(EventType.PLAYER_CONNECT, {"player": player.to_dict()})

    def _release_slot(self, player: ActivePlayer) -> None:
        if self.players.get(player.slot) is player:
            del self.players[player.slot]

    async def handle_log_line(self, line: str) -> Optional[LogEvent]:
        """
        React to one games-log line.

        Chat and kill lines are published as events; connect and
        disconnect lines trigger an immediate poll.
        """
        event = self.dialect.parse_log_line(line)
        if event is None:
            return None

        if event.type in (LogEventType.CONNECT, LogEventType.DISCONNECT):
            if self.is_running():
                await self.poll()
        elif event.type == LogEventType.SAY:
            self._publish(EventType.CHAT_MESSAGE, {
                "slot": event.slot,
                "guid": event.guid,
                "name": event.name,
                "message": event.message,
            })
        elif event.type == LogEventType.KILL:
            self._publish(EventType.PLAYER_KILL, event.data)
        return event

    async def refresh_info(self) -> dict:
        """Re-read hostname, map, max clients and game type. Best effort."""
        try:
            hostname = await self.rcon.get_hostname()
            map_name = await self.rcon.get_map_name()
            max_clients = await self.rcon.get_max_clients()
            game_type = await self.rcon.get_game_type()
        except Exception as e:
            logger.error(f"[{self.name}] Failed to refresh server info: {e}", exc_info=True)
            return self.info

        if hostname:
            self.info["hostname"] = hostname
        if map_name:
            self.info["map"] = map_name
        if max_clients:
            self.info["max_clients"] = max_clients
        if game_type:
            self.info["game_type"] = game_type
        return self.info

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_players(self) -> list[ActivePlayer]:
        return [self.players[slot] for slot in sorted(self.players)]

    def get_player_count(self) -> int:
        return len(self.players)

    async def get_status(self, refresh: bool = False) -> dict:
        """Snapshot of the instance. With refresh, poll and re-read info first."""
        if refresh and self.is_running():
            await self.poll()
            await self.refresh_info()
        return self.to_dict(include_details=True)

    def find_player(self, identifier: Union[int, str]) -> Optional[ActivePlayer]:
        """
        Find a connected player by slot number or name.

        Names match case-insensitively, exact first, then a unique partial match.
        """
        if isinstance(identifier, int) or (isinstance(identifier, str) and identifier.isdigit()):
            player = self.players.get(int(identifier))
            if player is not None:
                return player
            if isinstance(identifier, int):
                return None

        needle = str(identifier).strip().lower()
        if not needle:
            return None

        for player in self.players.values():
            if player.name.lower() == needle:
                return player

        partial = [p for p in self.players.values() if needle in p.name.lower()]
        if len(partial) == 1:
            return partial[0]
        return None

    # ------------------------------------------------------------------
    # Operator commands
    # ------------------------------------------------------------------

    async def say(self, message: str) -> bool:
        response = await self.rcon.say(message)
        if not response.success:
            logger.warning(f"[{self.name}] say failed: {response.message}")
        return response.success

    async def tell_player(self, identifier: Union[int, str], message: str) -> bool:
        player = self.find_player(identifier)
        if player is None:
            return False
        return await player.tell(message)

    async def kick_player(self, identifier: Union[int, str], reason: str, origin: Origin) -> bool:
        player = self.find_player(identifier)
        if player is None:
            logger.info(f"[{self.name}] kick: no player matching {identifier!r}")
            return False
        return await player.kick(reason, origin)

    async def ban_player(self, identifier: Union[int, str], reason: str, origin: Origin) -> bool:
        player = self.find_player(identifier)
        if player is None:
            logger.info(f"[{self.name}] ban: no player matching {identifier!r}")
            return False
        return await player.ban(reason, origin)

    async def temp_ban_player(self, identifier: Union[int, str], reason: str, origin: Origin,
                              duration: int) -> bool:
        player = self.find_player(identifier)
        if player is None:
            return False
        return await player.temp_ban(reason, origin, duration)

    async def report_player(self, identifier: Union[int, str], reason: str, origin: Origin) -> bool:
        player = self.find_player(identifier)
        if player is None:
            return False
        return await player.report(reason, origin)

    def to_dict(self, include_details: bool = False) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "dialect": self.dialect.name,
            "status": self.status.value,
            "running": self.is_running(),
            "player_count": self.get_player_count(),
            "max_players": self.info["max_clients"],
            "map": self.info["map"],
        }
        if include_details:
            data.update({
                "hostname": self.info["hostname"],
                "game_type": self.info["game_type"],
                "last_error": self.last_error,
                "stats": self.stats.to_dict(),
                "players": [player.to_dict() for player in self.get_players()],
            })
        return data
