# services/player.py
"""
Connected player entity.

An ActivePlayer lives exactly as long as its slot is reported by the
server. It owns GUID recovery, the player's session, and the moderation
actions that target it.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from helpers.utils import seconds_to_dhms
from services.collaborators import EventRecorder, ModerationType, Origin, PenaltyRecord
from services.dialects import StatusLine
from services.events import EventType, ServerEvent

if TYPE_CHECKING:
    from services.server_instance import ServerInstance

logger = logging.getLogger(__name__)

KICK_MESSAGE = "You have been kicked: ^5{reason}"
BAN_MESSAGE = "You have been permanently banned for: ^5{reason}"
TEMP_BAN_MESSAGE = "You have been banned for: ^5{reason} {remaining}^7 left"


class GuidState(Enum):
    """How the player's GUID was obtained."""
    REPORTED = "reported"
    UNCONFIRMED = "unconfirmed"
    CONFIRMED_VIA_SLOT = "confirmed_via_slot"
    CONFIRMED_VIA_NAME = "confirmed_via_name"
    SYNTHESIZED = "synthesized"


@dataclass
class PlayerSession:
    """Per-connection session data."""
    id: str
    created: datetime
    last_seen: datetime
    data: dict = field(default_factory=lambda: {"authorized": False})


def synthesize_guid(name: str, ip: Optional[str], slot: Optional[int]) -> str:
    """Deterministic provisional GUID for players the server reports none for."""
    seed = f"{name}_{ip or 'unknown'}_{slot or 0}"
    return "temp_" + hashlib.md5(seed.encode('utf-8')).hexdigest()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ActivePlayer:
    """A player currently occupying a slot on a server instance."""

    def __init__(self, server: "ServerInstance", line: StatusLine):
        self.server = server
        self.slot = line.slot
        self.reported_name = line.name
        self.name = line.name or f"Unnamed_{line.slot}"
        self.address = line.address
        self.ip = line.ip
        self.ping = line.ping
        self.score = line.score
        self.bot = line.bot

        if line.has_guid:
            self.guid: Optional[str] = line.guid
            self.guid_state = GuidState.REPORTED
        else:
            self.guid = None
            self.guid_state = GuidState.UNCONFIRMED

        self.online = False
        self.player_id: Optional[int] = None
        self.permission_level = 0
        self.country: Optional[str] = None
        self.country_code: Optional[str] = None
        self.session: Optional[PlayerSession] = None
        self.connected_at: Optional[datetime] = None
        self.last_seen: Optional[datetime] = None
        self._disconnected = False

    def __repr__(self) -> str:
        return f"<ActivePlayer slot={self.slot} name={self.name!r} guid={self.guid!r}>"

    @property
    def is_guid_confirmed(self) -> bool:
        return self.guid_state not in (GuidState.UNCONFIRMED, GuidState.SYNTHESIZED)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    async def _find_status_line(self, predicate: Callable[[StatusLine], bool]) -> Optional[StatusLine]:
        rcon = self.server.rcon
        if rcon is None:
            return None

        response = await rcon.get_status()
        if not response.success:
            logger.debug(f"[{self.server.name}] status re-query failed: {response.message}")
            return None

        for line in response.data["clients"]:
            if not line.is_placeholder and line.has_guid and predicate(line):
                return line
        return None

    async def resolve_guid(self) -> str:
        """
        Recover a GUID for a player reported without one.

        Tries a fresh status matched by slot, then a fresh status matched by
        name, and finally synthesizes a provisional GUID.
        """
        line = await self._find_status_line(lambda l: l.slot == self.slot)
        if line is not None:
            self.guid_state = GuidState.CONFIRMED_VIA_SLOT
        elif self.reported_name:
            line = await self._find_status_line(lambda l: l.name == self.reported_name)
            if line is not None:
                self.guid_state = GuidState.CONFIRMED_VIA_NAME

        if line is not None:
            self.guid = line.guid
            if not self.ip and line.ip:
                self.address = line.address
                self.ip = line.ip
        else:
            self.guid = synthesize_guid(self.name, self.ip, self.slot)
            self.guid_state = GuidState.SYNTHESIZED
            logger.warning(f"[{self.server.name}] Synthesized GUID for {self.name} on slot {self.slot}")

        logger.debug(f"[{self.server.name}] GUID for {self.name}: {self.guid} ({self.guid_state.value})")
        return self.guid

    async def build(self) -> bool:
        """
        Complete the player after it is first reported.

        Collaborator and geolocation failures are logged and absorbed; the
        player is still usable without a persisted id.

        Returns:
            True when the player can be inserted into the slot table
        """
        try:
            if self.guid is None:
                await self.resolve_guid()

            if self.server.geolocator is not None and self.ip:
                try:
                    location = await self.server.geolocator.lookup(self.ip)
                    if location:
                        self.country = location.get("country")
                        self.country_code = location.get("country_code")
                except Exception as e:
                    logger.error(f"Geolocation failed for {self.ip}: {e}", exc_info=True)

            try:
                record = await self.server.directory.resolve_player(
                    self.guid, self.name, ip=self.ip, country=self.country
                )
                self.player_id = record.id
                self.permission_level = record.permission_level
            except Exception as e:
                logger.error(f"[{self.server.name}] Could not resolve player {self.name}: {e}", exc_info=True)

            now = _now()
            self.session = PlayerSession(
                id=self.ip or secrets.token_hex(16),
                created=now,
                last_seen=now,
            )
            self.connected_at = now
            self.last_seen = now
            self.online = True

            await self._record_event(EventRecorder.EVENT_PLAYER_CONNECT, {
                "name": self.name,
                "guid": self.guid,
                "slot": self.slot,
                "ip": self.ip,
            })
            return True
        except Exception as e:
            logger.error(f"[{self.server.name}] Failed to build player on slot {self.slot}: {e}", exc_info=True)
            return False

    def refresh(self, line: StatusLine) -> None:
        """Update volatile fields from a newer status line."""
        now = _now()
        self.ping = line.ping
        self.score = line.score
        self.last_seen = now
        if self.session is not None:
            self.session.last_seen = now
        if line.ip and line.address != self.address:
            self.address = line.address
            self.ip = line.ip

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def _record_event(self, event_type: str, data: dict) -> None:
        try:
            await self.server.recorder.record_event(event_type, self.server.id, self.player_id, data)
        except Exception as e:
            logger.error(f"[{self.server.name}] Failed to record {event_type}: {e}", exc_info=True)

    async def _record_penalty(self, penalty: PenaltyRecord) -> None:
        try:
            await self.server.recorder.record_penalty(penalty)
        except Exception as e:
            logger.error(f"[{self.server.name}] Failed to record penalty for {self.name}: {e}", exc_info=True)

    def _publish(self, event_type: EventType, data: Optional[dict] = None) -> None:
        payload = {"player": self.to_dict()}
        payload.update(data or {})
        self.server.events.publish(ServerEvent(
            type=event_type,
            server_id=self.server.id,
            server_name=self.server.name,
            data=payload,
        ))

    async def get_meta(self, key: str) -> Any:
        if self.player_id is None:
            return None
        try:
            return await self.server.directory.get_metadata(self.player_id, key)
        except Exception as e:
            logger.error(f"Failed to read meta {key} for {self.name}: {e}", exc_info=True)
            return None

    async def set_meta(self, key: str, value: Any) -> bool:
        if self.player_id is None:
            return False
        try:
            await self.server.directory.set_metadata(self.player_id, key, value)
            return True
        except Exception as e:
            logger.error(f"Failed to write meta {key} for {self.name}: {e}", exc_info=True)
            return False

    # ------------------------------------------------------------------
    # Moderation
    # ------------------------------------------------------------------

    async def _penalize(self, penalty_type: ModerationType, reason: str, origin: Origin,
                        message: str, duration: Optional[int] = None) -> bool:
        await self._record_penalty(PenaltyRecord(
            type=penalty_type,
            server_id=self.server.id,
            target_id=self.player_id,
            target_name=self.name,
            target_guid=self.guid,
            origin=origin,
            reason=reason,
            duration=duration,
        ))
        self._publish(EventType.PLAYER_PENALTY, {
            "penalty": penalty_type.value,
            "reason": reason,
            "duration": duration,
            "origin": origin.name,
        })

        success = False
        if self.server.rcon is not None:
            response = await self.server.rcon.kick(self.slot, message)
            success = response.success
            if not success:
                logger.warning(f"[{self.server.name}] {penalty_type.value} of {self.name} failed: {response.message}")

        await self.disconnect()
        return success

    async def kick(self, reason: str, origin: Origin) -> bool:
        """Kick the player. The local entity is removed even if RCON fails."""
        logger.info(f"[{self.server.name}] {origin.name} kicked {self.name}: {reason}")
        return await self._penalize(
            ModerationType.KICK, reason, origin, KICK_MESSAGE.format(reason=reason)
        )

    async def ban(self, reason: str, origin: Origin) -> bool:
        logger.info(f"[{self.server.name}] {origin.name} banned {self.name}: {reason}")
        return await self._penalize(
            ModerationType.BAN, reason, origin, BAN_MESSAGE.format(reason=reason)
        )

    async def temp_ban(self, reason: str, origin: Origin, duration: int) -> bool:
        """
        Temporarily ban the player.

        Args:
            reason: Reason shown to the player
            origin: Who issued the ban
            duration: Ban length in seconds
        """
        logger.info(f"[{self.server.name}] {origin.name} temp-banned {self.name} for {duration}s: {reason}")
        message = TEMP_BAN_MESSAGE.format(reason=reason, remaining=seconds_to_dhms(duration))
        return await self._penalize(ModerationType.TEMP_BAN, reason, origin, message, duration)

    async def report(self, reason: str, origin: Origin) -> bool:
        """Report the player to staff. Nobody is disconnected."""
        await self._record_penalty(PenaltyRecord(
            type=ModerationType.REPORT,
            server_id=self.server.id,
            target_id=self.player_id,
            target_name=self.name,
            target_guid=self.guid,
            origin=origin,
            reason=reason,
        ))
        self._publish(EventType.PLAYER_REPORT, {"reason": reason, "origin": origin.name})

        if self.server.notifier is not None:
            try:
                await self.server.notifier.notify(
                    "Player report",
                    f"{origin.name} reported {self.name} on {self.server.name}: {reason}"
                )
            except Exception as e:
                logger.error(f"Failed to notify staff about report on {self.name}: {e}", exc_info=True)
        return True

    async def tell(self, message: str) -> bool:
        """Send a private message to the player."""
        if self.server.rcon is None or not message:
            return False
        response = await self.server.rcon.tell(self.slot, message)
        return response.success

    async def disconnect(self) -> None:
        """Tear the player down locally. Safe to call more than once."""
        if self._disconnected:
            return
        self._disconnected = True
        self.online = False
        self.last_seen = _now()
        if self.session is not None:
            self.session.last_seen = self.last_seen

        self.server._release_slot(self)
        logger.info(f"[{self.server.name}] {self.name} left slot {self.slot}")

        await self._record_event(EventRecorder.EVENT_PLAYER_DISCONNECT, {
            "name": self.name,
            "guid": self.guid,
            "slot": self.slot,
        })
        self._publish(EventType.PLAYER_DISCONNECT)

    def to_dict(self) -> dict:
        return {
            "slot": self.slot,
            "name": self.name,
            "guid": self.guid,
            "guid_state": self.guid_state.value,
            "player_id": self.player_id,
            "permission_level": self.permission_level,
            "ip": self.ip,
            "country": self.country,
            "ping": self.ping,
            "score": self.score,
            "bot": self.bot,
            "online": self.online,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
        }
