# services/dialects.py
"""
Engine dialects for the Quake3 family of RCON servers.

Every supported engine speaks the same UDP RCON frame but differs in:
- the layout of the `status` table
- how console variables are echoed back
- the color code convention used in player names
- the console command names for kick / tell / say
- the games log line format

A dialect is chosen once per server and never mutated afterwards.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from helpers.utils import sanitize_quotes, strip_port

OOB_HEADER = '\xff\xff\xff\xff'
PRINT_HEADER = 'print\n'

# GUID reported for clients the server has not authenticated yet
SENTINEL_GUID = '0'

# Replies that mean the server did not recognise the command or variable
UNKNOWN_COMMAND_MARKERS = ('Unknown command', 'unknown cmd', 'is not a valid')

MAP_PATTERN = re.compile(r'^map:\s*(?P<map>\S+)', re.MULTILINE)

# Column header of a `status` table (`num score ...` or `cl score ...`)
STATUS_HEADER_PATTERN = re.compile(r'^\s*(?:num|cl)\s+score\s+', re.MULTILINE | re.IGNORECASE)


class Dialect(Enum):
    """Supported engine dialects."""
    T6 = "t6"
    IW3 = "iw3"
    Q3 = "q3"


@dataclass(frozen=True)
class StatusLine:
    """One occupied client slot as reported by the `status` command."""
    slot: int
    score: int
    bot: bool
    ping: str
    guid: Optional[str]
    name: str
    last_message: int
    address: str
    qport: int
    rate: int

    @property
    def is_placeholder(self) -> bool:
        """Slot is still connecting or zombied (ping shows CNCT / ZMBI)."""
        return not self.ping.lstrip('-').isdigit()

    @property
    def has_guid(self) -> bool:
        return bool(self.guid) and self.guid != SENTINEL_GUID

    @property
    def ip(self) -> Optional[str]:
        if self.address in ('bot', 'loopback', 'unknown'):
            return None
        return strip_port(self.address)


class LogEventType(Enum):
    """Types of games-log lines a dialect can recognise."""
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    SAY = "say"
    KILL = "kill"


@dataclass
class LogEvent:
    """A parsed games-log line."""
    type: LogEventType
    slot: Optional[int] = None
    guid: Optional[str] = None
    name: Optional[str] = None
    message: Optional[str] = None
    data: dict = field(default_factory=dict)
    raw_line: str = ""


def strip_header(text: str) -> str:
    """Remove the out-of-band marker and the `print` line from a reply."""
    if text.startswith(OOB_HEADER):
        text = text[len(OOB_HEADER):]
    if text.startswith(PRINT_HEADER):
        text = text[len(PRINT_HEADER):]
    return text


def _to_int(value: Optional[str], default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


class DialectDescriptor:
    """
    Command templates and response patterns for one engine.

    Subclasses only override class constants (and `parse_status_match`
    or `_parse_log_match` where the layout differs).
    """

    DIALECT: Dialect = None
    ALIASES: tuple = ()

    # Command templates (str.format placeholders)
    STATUS_COMMAND = 'status'
    GET_VARIABLE = '{name}'
    SET_VARIABLE = 'set {name} {value}'
    KICK = 'clientkick {client} "{reason}"'
    TELL = 'tell {client} "{message}"'
    SAY = 'say "{message}"'

    STATUS_PATTERN: re.Pattern = None
    VARIABLE_PATTERN = re.compile(r'^"?(?P<name>[^"\s]+)"?\s+is:\s*(?P<value>.*)$', re.MULTILINE)
    COLOR_PATTERN = re.compile(r'\^[0-9]')

    CONNECT_PATTERN: re.Pattern = None
    DISCONNECT_PATTERN: re.Pattern = None
    SAY_PATTERN: re.Pattern = None
    KILL_PATTERN: re.Pattern = None

    VARIABLES = {
        'hostname': 'sv_hostname',
        'mapname': 'mapname',
        'maxclients': 'sv_maxclients',
        'gametype': 'g_gametype',
    }

    MAX_SAY_LENGTH = 100
    # Seconds to wait between consecutive chunked commands
    COMMAND_DELAY = 0.3

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.DIALECT.value}>"

    @property
    def name(self) -> str:
        return self.DIALECT.value

    # ------------------------------------------------------------------
    # Command formatting
    # ------------------------------------------------------------------

    def format_status(self) -> str:
        return self.STATUS_COMMAND

    def format_get_variable(self, name: str) -> str:
        return self.GET_VARIABLE.format(name=name)

    def format_set_variable(self, name: str, value) -> str:
        return self.SET_VARIABLE.format(name=name, value=value)

    def format_kick(self, client: int, reason: str) -> str:
        return self.KICK.format(client=client, reason=sanitize_quotes(reason))

    def format_tell(self, client: int, message: str) -> str:
        return self.TELL.format(client=client, message=sanitize_quotes(message))

    def format_say(self, message: str) -> str:
        return self.SAY.format(message=sanitize_quotes(message))

    # ------------------------------------------------------------------
    # Response parsing
    # ------------------------------------------------------------------

    def strip_colors(self, text: Optional[str]) -> str:
        if not text:
            return ''
        return self.COLOR_PATTERN.sub('', text)

    def parse_status(self, text: str) -> tuple[list[StatusLine], Optional[str]]:
        """
        Parse a `status` reply.

        Args:
            text: Reply body, with or without the out-of-band header

        Returns:
            Tuple of (status lines in reported order, map name or None)
        """
        body = strip_header(text)
        clients = [self.parse_status_match(m) for m in self.STATUS_PATTERN.finditer(body)]
        map_match = MAP_PATTERN.search(body)
        return clients, map_match.group('map') if map_match else None

    def is_status_reply(self, text: str) -> bool:
        """Check whether a reply carries a `status` table, even an empty one."""
        body = strip_header(text)
        return bool(MAP_PATTERN.search(body) or STATUS_HEADER_PATTERN.search(body))

    def parse_status_match(self, match: re.Match) -> StatusLine:
        g = match.groupdict()
        guid = g.get('guid')
        address = g['address']
        return StatusLine(
            slot=int(g['slot']),
            score=_to_int(g['score']),
            bot=g.get('bot') == '1' or address == 'bot' or bool(guid and guid.startswith('bot')),
            ping=g['ping'],
            guid=guid,
            name=self.strip_colors(g['name']).strip(),
            last_message=_to_int(g['lastmsg']),
            address=address,
            qport=_to_int(g['qport']),
            rate=_to_int(g['rate']),
        )

    def parse_variable(self, text: str) -> Optional[str]:
        """
        Extract a console variable value from a reply.

        Returns:
            The cleaned value, or None if the reply carries no value
        """
        body = strip_header(text).strip()
        if not body or any(marker in body for marker in UNKNOWN_COMMAND_MARKERS):
            return None

        match = self.VARIABLE_PATTERN.search(body)
        raw = match.group('value') if match else body.splitlines()[0]
        return self.clean_value(raw)

    def clean_value(self, value: Optional[str]) -> Optional[str]:
        """Strip quoting, `default:` / `Domain is` annotations and colors."""
        if value is None:
            return None

        cleaned = value.strip()
        if '" is: "' in cleaned:
            cleaned = cleaned.split('" is: "', 1)[1]

        for marker in (' default:', 'Domain is'):
            position = cleaned.find(marker)
            if position != -1:
                cleaned = cleaned[:position]

        cleaned = cleaned.strip().strip('"')
        return self.strip_colors(cleaned).strip()

    def parse_log_line(self, line: str) -> Optional[LogEvent]:
        """Parse one games-log line, returning None for uninteresting lines."""
        line = line.rstrip('\r\n')
        for event_type, pattern in (
            (LogEventType.SAY, self.SAY_PATTERN),
            (LogEventType.KILL, self.KILL_PATTERN),
            (LogEventType.CONNECT, self.CONNECT_PATTERN),
            (LogEventType.DISCONNECT, self.DISCONNECT_PATTERN),
        ):
            if pattern is None:
                continue
            match = pattern.search(line)
            if match:
                return self._parse_log_match(event_type, match, line)
        return None

    def _parse_log_match(self, event_type: LogEventType, match: re.Match, line: str) -> LogEvent:
        g = match.groupdict()
        data = {}
        if event_type == LogEventType.KILL:
            data = {
                'victim_guid': g.get('victim_guid'),
                'victim_slot': _to_int(g.get('victim_slot'), -1),
                'victim_name': self.strip_colors(g.get('victim_name')),
                'attacker_guid': g.get('attacker_guid'),
                'attacker_slot': _to_int(g.get('attacker_slot'), -1),
                'attacker_name': self.strip_colors(g.get('attacker_name')),
                'weapon': g.get('weapon'),
            }
        return LogEvent(
            type=event_type,
            slot=_to_int(g['slot'], -1) if g.get('slot') is not None else None,
            guid=g.get('guid'),
            name=self.strip_colors(g.get('name')) or None,
            message=g.get('message'),
            data=data,
            raw_line=line,
        )


class T6Dialect(DialectDescriptor):
    """Plutonium Black Ops II (and the T4 / T5 servers sharing its console)."""

    DIALECT = Dialect.T6
    ALIASES = ('t6', 't4', 't5', 'plutonium')

    KICK = 'clientkick_for_reason {client} "{reason}"'

    STATUS_PATTERN = re.compile(
        r'^ *(?P<slot>[0-9]+) +(?P<score>-?[0-9]+) +(?P<bot>[0-9]+) +(?P<ping>[0-9]+|CNCT|ZMBI) +'
        r'(?P<guid>[A-Za-z0-9]{1,32}|bot[0-9]+|[\[A-Za-z0-9]+) *(?P<name>.{0,32}) +(?P<lastmsg>[0-9]+) +'
        r'(?P<address>\d+\.\d+\.\d+\.\d+:-*\d{1,5}|0+\.0+:-*\d{1,5}|loopback|unknown|bot) +'
        r'(?P<qport>-*[0-9]+) +(?P<rate>[0-9]+) *$',
        re.MULTILINE
    )

    COLOR_PATTERN = re.compile(r'\^([0-9]|:|;)')

    CONNECT_PATTERN = re.compile(r'\bJ;(?P<guid>[^;]+);(?P<slot>\d+);(?P<name>[^;]+)$')
    DISCONNECT_PATTERN = re.compile(r'\bQ;(?P<guid>[^;]+);(?P<slot>\d+);(?P<name>[^;]+)$')
    SAY_PATTERN = re.compile(r'\bsay(?:team)?;(?P<guid>[^;]+);(?P<slot>\d+);(?P<name>[^;]+);(?P<message>.*)$')
    KILL_PATTERN = re.compile(
        r'\bK;(?P<victim_guid>[^;]*);(?P<victim_slot>-?\d+);[^;]*;(?P<victim_name>[^;]*);'
        r'(?P<attacker_guid>[^;]*);(?P<attacker_slot>-?\d+);[^;]*;(?P<attacker_name>[^;]*);'
        r'(?P<weapon>[^;]*)'
    )

    MAX_SAY_LENGTH = 100
    COMMAND_DELAY = 0.3


class IW3Dialect(T6Dialect):
    """Call of Duty 4 lineage (CoD4X, IW4x, IW5 dedicated servers)."""

    DIALECT = Dialect.IW3
    ALIASES = ('iw3', 'iw4', 'iw5', 'cod4', 'cod4x')

    KICK = 'clientkick {client} "{reason}"'

    # No bot column: bots are recognised by their address
    STATUS_PATTERN = re.compile(
        r'^ *(?P<slot>[0-9]+) +(?P<score>-?[0-9]+) +(?P<ping>[0-9]+|CNCT|ZMBI) +'
        r'(?P<guid>[A-Za-z0-9]{1,32}|bot[0-9]*) +(?P<name>.*?) +(?P<lastmsg>[0-9]+) +'
        r'(?P<address>\S+) +(?P<qport>-?[0-9]+) +(?P<rate>[0-9]+) *$',
        re.MULTILINE
    )

    COLOR_PATTERN = re.compile(r'\^[0-9]')

    MAX_SAY_LENGTH = 120
    COMMAND_DELAY = 0.25


class Q3Dialect(DialectDescriptor):
    """ioquake3 / OpenJK lineage (Movie Battles II, OpenArena, JK:A)."""

    DIALECT = Dialect.Q3
    ALIASES = ('q3', 'ioq3', 'quake3', 'jka', 'mb2', 'openarena', 'default')

    KICK = 'clientkick {client}'
    TELL = 'svtell {client} "{message}"'
    SAY = 'svsay "{message}"'

    # No GUID column: player identity is synthesized
    STATUS_PATTERN = re.compile(
        r'^ *(?P<slot>[0-9]+) +(?P<score>-?[0-9]+) +(?P<ping>[0-9]+|CNCT|ZMBI) +'
        r'(?P<name>.*?) +(?P<lastmsg>[0-9]+) +(?P<address>\S+) +'
        r'(?P<qport>-?[0-9]+) +(?P<rate>[0-9]+) *$',
        re.MULTILINE
    )

    COLOR_PATTERN = re.compile(r'\^[0-9A-Za-z]')

    CONNECT_PATTERN = re.compile(r'\bClientConnect: (?P<slot>\d+)')
    DISCONNECT_PATTERN = re.compile(r'\bClientDisconnect: (?P<slot>\d+)')
    SAY_PATTERN = re.compile(r'\bsay: (?P<name>.+?): (?P<message>.*)$')
    KILL_PATTERN = re.compile(
        r'\bKill: (?P<attacker_slot>-?\d+) (?P<victim_slot>-?\d+) \d+: '
        r'(?P<attacker_name>.+?) killed (?P<victim_name>.+?) by (?P<weapon>\S+)'
    )

    MAX_SAY_LENGTH = 140
    COMMAND_DELAY = 0.2


DIALECTS: dict[Dialect, DialectDescriptor] = {
    Dialect.T6: T6Dialect(),
    Dialect.IW3: IW3Dialect(),
    Dialect.Q3: Q3Dialect(),
}


def get_dialect(identifier) -> DialectDescriptor:
    """
    Resolve an engine identifier to its dialect descriptor.

    Args:
        identifier: Dialect enum, descriptor, or engine name / alias

    Returns:
        The shared descriptor for that engine

    Raises:
        ValueError: If the identifier names no supported engine
    """
    if isinstance(identifier, DialectDescriptor):
        return identifier
    if isinstance(identifier, Dialect):
        return DIALECTS[identifier]

    key = str(identifier or '').strip().lower()
    for descriptor in DIALECTS.values():
        if key in descriptor.ALIASES:
            return descriptor

    raise ValueError(f"Unsupported dialect: {identifier}")
