# services/rcon.py
"""
UDP RCON client for Quake3-family game servers.

Two layers:
- RCONTransport: one UDP socket per server, multiplexing many outstanding
  commands through a 4-digit correlation ID echoed back by the server.
- RCONClient: dialect-aware commands (status, variables, say/tell, kick)
  returning RCONResponse objects instead of raising.

Request frame:  <ID:4 ascii digits> FF FF FF FF "rcon <password> <command>"
Response frame: <ID:4 ascii digits> FF FF FF FF "print\\n" <text>
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from helpers.utils import break_message
from services.dialects import DialectDescriptor, get_dialect, strip_header

logger = logging.getLogger(__name__)

OOB_PREFIX = b'\xff\xff\xff\xff'
REQUEST_ID_LENGTH = 4
MAX_REQUEST_ID = 9999

AUTH_FAILURE_MARKERS = ('Bad rconpassword', 'Invalid password', 'No rconpassword set')


def _default_timeout() -> float:
    from config.settings import RCON_TIMEOUT
    return RCON_TIMEOUT


class RCONFailure(Enum):
    """Why an RCON command did not produce a usable reply."""
    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    AUTH = "auth"
    PARSE = "parse"


@dataclass
class RCONResponse:
    """Standardized response from RCON commands."""
    success: bool
    message: str
    data: Optional[dict] = None
    raw_response: Optional[str] = None
    error: Optional[RCONFailure] = None

    @property
    def is_empty(self) -> bool:
        """True for a successful reply that carried no records."""
        if not self.success:
            return False
        if not self.data:
            return True
        return "clients" in self.data and not self.data["clients"]


class RCONError(Exception):
    """Base exception for RCON errors."""
    pass


class RCONConnectionError(RCONError):
    """Socket could not be opened, written, or was closed."""
    pass


class RCONTimeoutError(RCONError, TimeoutError):
    """No reply arrived before the command deadline."""
    pass


class RCONCommandError(RCONError):
    """RCON command execution failed."""
    pass


@dataclass
class PendingRequest:
    """A command awaiting its reply."""
    request_id: str
    command: str
    deadline: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class RCONProtocol(asyncio.DatagramProtocol):
    """Hands socket callbacks back to the owning transport."""

    def __init__(self, owner: "RCONTransport"):
        self._owner = owner

    def datagram_received(self, data: bytes, addr) -> None:
        self._owner._handle_datagram(data)

    def error_received(self, exc: Exception) -> None:
        self._owner._handle_error(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._owner._handle_error(exc or RCONConnectionError("Socket closed"))


class RCONTransport:
    """
    Multiplexed UDP request/response channel to one RCON endpoint.

    Writes are serialized by a lock held only for ID allocation and the
    socket write; replies are awaited concurrently. Every request carries
    its own timer and resolves exactly once.
    """

    def __init__(self, host: str, port: int, password: str, timeout: Optional[float] = None):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout if timeout is not None else _default_timeout()

        self._transport: Optional[asyncio.DatagramTransport] = None
        self._ready = False
        self._counter = 0
        self._pending: dict[str, PendingRequest] = {}
        self._write_lock = asyncio.Lock()

    @property
    def is_ready(self) -> bool:
        return self._ready and self._transport is not None and not self._transport.is_closing()

    @property
    def pending_ids(self) -> frozenset:
        return frozenset(self._pending)

    @staticmethod
    def build_frame(request_id: str, password: str, command: str) -> bytes:
        return (
            request_id.encode('ascii')
            + OOB_PREFIX
            + f"rcon {password} {command}".encode('utf-8', errors='replace')
        )

    async def open(self) -> None:
        """
        Bind a datagram socket connected to the server.

        Raises:
            RCONConnectionError: If the socket cannot be created
        """
        if self.is_ready:
            return

        if self._transport is not None:
            self._transport.close()
            self._transport = None

        loop = asyncio.get_running_loop()
        try:
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: RCONProtocol(self),
                remote_addr=(self.host, self.port),
            )
        except OSError as e:
            self._ready = False
            logger.error(f"Failed to open RCON socket to {self.host}:{self.port}: {e}")
            raise RCONConnectionError(f"Connection failed: {e}")

        self._ready = True
        logger.info(f"RCON transport opened to {self.host}:{self.port}")

    async def close(self) -> None:
        """Close the socket and fail every outstanding request."""
        self._ready = False
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self._fail_pending(RCONConnectionError("Transport closed"))

    async def send(self, command: str, timeout: Optional[float] = None) -> str:
        """
        Send a command and wait for its reply.

        Args:
            command: Console command text
            timeout: Seconds to wait, defaults to the transport timeout

        Returns:
            Reply text with the correlation ID and out-of-band marker removed

        Raises:
            RCONConnectionError: Transport not ready or write failed
            RCONTimeoutError: No reply before the deadline
        """
        if not self.is_ready:
            raise RCONConnectionError(f"Transport to {self.host}:{self.port} is not ready")

        loop = asyncio.get_running_loop()
        timeout = self.timeout if timeout is None else timeout

        async with self._write_lock:
            if not self.is_ready:
                raise RCONConnectionError(f"Transport to {self.host}:{self.port} is not ready")

            request_id = self._next_request_id()
            request = PendingRequest(
                request_id=request_id,
                command=command,
                deadline=loop.time() + timeout,
                future=loop.create_future(),
            )
            request.timer = loop.call_later(timeout, self._expire, request)
            self._pending[request_id] = request

            try:
                self._transport.sendto(self.build_frame(request_id, self.password, command))
            except OSError as e:
                self._remove(request)
                self._handle_error(e)
                raise RCONConnectionError(f"Send failed: {e}")

            logger.debug(f"RCON [{self.host}:{self.port}] -> {request_id} {command}")

        try:
            return await request.future
        except asyncio.CancelledError:
            self._remove(request)
            raise

    def _next_request_id(self) -> str:
        for _ in range(MAX_REQUEST_ID):
            self._counter = (self._counter + 1) % MAX_REQUEST_ID
            request_id = f"{self._counter:0{REQUEST_ID_LENGTH}d}"
            if request_id not in self._pending:
                return request_id
        raise RCONCommandError("No free request id")

    def _remove(self, request: PendingRequest) -> None:
        if self._pending.get(request.request_id) is request:
            del self._pending[request.request_id]
        if request.timer is not None:
            request.timer.cancel()

    def _expire(self, request: PendingRequest) -> None:
        if self._pending.get(request.request_id) is not request:
            return
        del self._pending[request.request_id]
        if not request.future.done():
            logger.warning(f"RCON [{self.host}:{self.port}] timeout for {request.request_id} ({request.command})")
            request.future.set_exception(RCONTimeoutError(f"Command timed out: {request.command}"))

    def _handle_datagram(self, data: bytes) -> None:
        if len(data) < REQUEST_ID_LENGTH:
            logger.debug(f"RCON [{self.host}:{self.port}] discarded short datagram ({len(data)} bytes)")
            return

        request_id = data[:REQUEST_ID_LENGTH].decode('ascii', errors='replace')
        request = self._pending.pop(request_id, None)
        if request is None:
            logger.debug(f"RCON [{self.host}:{self.port}] discarded unmatched reply {request_id!r}")
            return

        if request.timer is not None:
            request.timer.cancel()

        payload = data[REQUEST_ID_LENGTH:]
        if payload.startswith(OOB_PREFIX):
            payload = payload[len(OOB_PREFIX):]

        logger.debug(f"RCON [{self.host}:{self.port}] <- {request_id} ({len(payload)} bytes)")
        if not request.future.done():
            request.future.set_result(payload.decode('utf-8', errors='replace'))

    def _handle_error(self, exc: Exception) -> None:
        if self._ready:
            logger.warning(f"RCON transport to {self.host}:{self.port} failed: {exc}")
        self._ready = False
        self._fail_pending(RCONConnectionError(f"Socket error: {exc}"))

    def _fail_pending(self, error: RCONError) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for request in pending:
            if request.timer is not None:
                request.timer.cancel()
            if not request.future.done():
                request.future.set_exception(error)


class RCONClient:
    """
    Dialect-aware RCON commands for one server.

    All command methods return an RCONResponse. Transport failures,
    timeouts and unparsable replies become `success=False` with the
    matching RCONFailure in `error`.
    """

    def __init__(self, host: str, port: int, password: str, dialect,
                 transport: Optional[RCONTransport] = None, timeout: Optional[float] = None):
        self.host = host
        self.port = port
        self.dialect: DialectDescriptor = get_dialect(dialect)
        self.transport = transport or RCONTransport(host, port, password, timeout)

    @property
    def is_connected(self) -> bool:
        return self.transport.is_ready

    async def connect(self) -> bool:
        """Open the transport. Raises RCONConnectionError on bind failure."""
        await self.transport.open()
        return True

    async def disconnect(self) -> None:
        await self.transport.close()

    async def _request(self, command: str, timeout: Optional[float] = None) -> RCONResponse:
        try:
            raw = await self.transport.send(command, timeout)
        except RCONTimeoutError as e:
            return RCONResponse(success=False, message=str(e), error=RCONFailure.TIMEOUT)
        except RCONError as e:
            return RCONResponse(success=False, message=str(e), error=RCONFailure.UNREACHABLE)

        body = strip_header(raw)
        if any(marker in body for marker in AUTH_FAILURE_MARKERS):
            logger.warning(f"RCON authentication rejected by {self.host}:{self.port}")
            return RCONResponse(
                success=False,
                message="Authentication failed",
                raw_response=body,
                error=RCONFailure.AUTH
            )

        return RCONResponse(success=True, message=f"Command executed: {command}", raw_response=body)

    async def get_status(self) -> RCONResponse:
        """
        Query the occupied client slots.

        Returns:
            RCONResponse with data {"clients": [StatusLine, ...], "map": str | None}
        """
        response = await self._request(self.dialect.format_status())
        if not response.success:
            return response

        clients, map_name = self.dialect.parse_status(response.raw_response)
        if not clients and not self.dialect.is_status_reply(response.raw_response):
            logger.warning(f"Unparsable status reply from {self.host}:{self.port}: {response.raw_response[:200]!r}")
            return RCONResponse(
                success=False,
                message="Could not parse status reply",
                raw_response=response.raw_response,
                error=RCONFailure.PARSE
            )

        return RCONResponse(
            success=True,
            message=f"{len(clients)} client(s) reported",
            data={"clients": clients, "map": map_name},
            raw_response=response.raw_response
        )

    async def get_variable(self, name: str) -> RCONResponse:
        """Read a console variable."""
        response = await self._request(self.dialect.format_get_variable(name))
        if not response.success:
            return response

        value = self.dialect.parse_variable(response.raw_response)
        if value is None:
            logger.debug(f"Could not parse variable {name} from {self.host}:{self.port}: {response.raw_response!r}")
            return RCONResponse(
                success=False,
                message=f"Could not read variable {name}",
                raw_response=response.raw_response,
                error=RCONFailure.PARSE
            )

        return RCONResponse(
            success=True,
            message=f"{name} = {value}",
            data={"name": name, "value": value},
            raw_response=response.raw_response
        )

    async def set_variable(self, name: str, value) -> RCONResponse:
        """Set a console variable."""
        response = await self._request(self.dialect.format_set_variable(name, value))
        if response.success:
            response.message = f"Set {name} to {value}"
        return response

    async def _send_chunked(self, message: str, build) -> RCONResponse:
        chunks = break_message(message or "", self.dialect.MAX_SAY_LENGTH)
        if not chunks:
            return RCONResponse(success=False, message="Message is empty")

        for index, chunk in enumerate(chunks):
            if index:
                await asyncio.sleep(self.dialect.COMMAND_DELAY)
            response = await self._request(build(chunk))
            if not response.success:
                return response

        return RCONResponse(
            success=True,
            message=f"Sent {len(chunks)} message chunk(s)",
            data={"chunks": chunks}
        )

    async def say(self, message: str) -> RCONResponse:
        """Broadcast a message to every player."""
        return await self._send_chunked(message, self.dialect.format_say)

    async def tell(self, client: int, message: str) -> RCONResponse:
        """Send a private message to one client slot."""
        return await self._send_chunked(message, lambda chunk: self.dialect.format_tell(client, chunk))

    async def kick(self, client: int, reason: str = "") -> RCONResponse:
        """Kick a client slot with a reason shown to the player."""
        response = await self._request(self.dialect.format_kick(client, reason))
        if response.success:
            response.message = f"Kicked client {client}"
            response.data = {"client": client, "reason": reason}
        return response

    async def execute(self, command: str) -> RCONResponse:
        """
        Execute a raw console command.

        Args:
            command: Raw console command string
        """
        return await self._request(command)

    async def test_connection(self) -> RCONResponse:
        """Test RCON connectivity and authentication with one status call."""
        response = await self.get_status()
        if response.success:
            return RCONResponse(success=True, message="Connection successful", data=response.data)
        return RCONResponse(
            success=False,
            message=f"Connection failed: {response.message}",
            error=response.error
        )

    async def _get_known_variable(self, key: str) -> str:
        response = await self.get_variable(self.dialect.VARIABLES[key])
        if response.success:
            return response.data["value"]
        return ""

    async def get_hostname(self) -> str:
        return await self._get_known_variable('hostname')

    async def get_map_name(self) -> str:
        return await self._get_known_variable('mapname')

    async def get_game_type(self) -> str:
        return await self._get_known_variable('gametype')

    async def get_max_clients(self) -> int:
        value = await self._get_known_variable('maxclients')
        try:
            return int(value)
        except ValueError:
            return 0


def get_rcon_client(dialect, host: str, port: int, password: str,
                    timeout: Optional[float] = None) -> RCONClient:
    """
    Factory function to get an RCON client for a server.

    Args:
        dialect: Dialect enum, descriptor, or engine name
        host: RCON server host
        port: RCON server port
        password: RCON password
        timeout: Per-command timeout in seconds

    Returns:
        RCON client bound to its own transport
    """
    return RCONClient(host, port, password, dialect, timeout=timeout)
