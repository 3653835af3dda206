import asyncio
from collections import deque
from typing import Optional

import pytest

from config.servers import ServerConfig
from services.collaborators import InMemoryPlayerDirectory, LoggingEventRecorder
from services.rcon import RCONClient
from services.server_instance import ServerInstance


# ============================================================================
# HELPERS
# ============================================================================


def t6_line(slot: int, guid: str, name: str, ip: str = "10.0.0.5", score: int = 0,
            ping="50", bot: int = 0) -> str:
    """One row of a T6 `status` table."""
    return (
        f"{slot:>3} {score:>5} {bot:>3} {ping:>4} {guid:<32} {name:<15} "
        f"{0:>7} {ip}:28960 {1234:>5} {25000:>5}"
    )


def status_response(lines: list[str], map_name: str = "zm_transit") -> str:
    """A T6 `status` reply as delivered by the transport."""
    header = [
        "print",
        f"map: {map_name}",
        "num score bot ping guid                             name            lastmsg address               qport rate",
        "--- ----- --- ---- -------------------------------- --------------- ------- --------------------- ----- -----",
    ]
    return "\n".join(header + lines) + "\n"


class FakeTransport:
    """Scripted stand-in for RCONTransport."""

    def __init__(self):
        self.ready = True
        self.sent: list[str] = []
        self.status_replies: deque = deque()
        self.default_status = status_response([])
        self.replies: dict[str, str] = {}
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.open_calls = 0

    @property
    def is_ready(self) -> bool:
        return self.ready

    async def open(self) -> None:
        self.open_calls += 1
        self.ready = True

    async def close(self) -> None:
        self.ready = False

    async def send(self, command: str, timeout: Optional[float] = None) -> str:
        self.sent.append(command)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with

        if command == "status":
            reply = self.status_replies.popleft() if self.status_replies else self.default_status
            if isinstance(reply, Exception):
                raise reply
            return reply
        return self.replies.get(command, "print\n")


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def rcon_client(transport) -> RCONClient:
    return RCONClient("127.0.0.1", 4976, "secret", "t6", transport=transport)


@pytest.fixture
def server_config() -> ServerConfig:
    return ServerConfig(
        id="zm1",
        name="Zombies",
        host="127.0.0.1",
        port=4976,
        rcon_port=4976,
        rcon_password="secret",
        dialect="t6",
        max_players=8,
    )


@pytest.fixture
def directory() -> InMemoryPlayerDirectory:
    return InMemoryPlayerDirectory()


@pytest.fixture
def recorder() -> LoggingEventRecorder:
    return LoggingEventRecorder()


@pytest.fixture
def instance(server_config, rcon_client, directory, recorder) -> ServerInstance:
    return ServerInstance(
        server_config,
        rcon=rcon_client,
        directory=directory,
        recorder=recorder,
        poll_interval=3600,
    )
