import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from services.collaborators import EventRecorder, SYSTEM_ORIGIN
from services.events import EventType
from services.instance_registry import InstanceRegistry
from services.rcon import RCONClient, RCONConnectionError
from services.server_instance import ServerInstance, ServerStatus

from conftest import FakeTransport, status_response, t6_line


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def transports() -> dict:
    return {}


@pytest.fixture
def registry(transports, recorder, directory) -> InstanceRegistry:
    registry = InstanceRegistry(directory=directory, recorder=recorder, poll_interval=3600)

    def factory(config):
        transport = transports.setdefault(config.id, FakeTransport())
        client = RCONClient(config.host, config.rcon_port, config.rcon_password, config.dialect,
                            transport=transport)
        return ServerInstance(config, rcon=client, directory=registry.directory,
                              recorder=registry.recorder, notifier=registry.notifier,
                              poll_interval=registry.poll_interval)

    registry._instance_factory = factory
    return registry


@pytest.fixture
def second_config(server_config):
    return replace(server_config, id="zm2", name="Zombies 2", port=4977, rcon_port=4977)


async def next_event(queue: asyncio.Queue, event_type: EventType):
    while True:
        event = await asyncio.wait_for(queue.get(), timeout=1.0)
        if event.type == event_type:
            return event


# ============================================================================
# MEMBERSHIP
# ============================================================================


async def test_add_server_starts_instance(registry, server_config):
    instance = await registry.add_server(server_config)

    assert instance.is_running()
    assert registry.get_server("zm1") is instance
    assert registry.get_servers() == [instance]
    await registry.stop_all()


async def test_add_duplicate_server_rejected(registry, server_config):
    await registry.add_server(server_config, start=False)

    with pytest.raises(ValueError):
        await registry.add_server(server_config)
    await registry.stop_all()


async def test_failed_start_keeps_instance(registry, transports, server_config):
    transports["zm1"] = FakeTransport()
    transports["zm1"].fail_with = RCONConnectionError("down")

    instance = await registry.add_server(server_config)

    assert registry.get_server("zm1") is instance
    assert instance.status == ServerStatus.ERROR

    transports["zm1"].fail_with = None
    assert await registry.start_server("zm1")
    await registry.stop_all()


async def test_remove_server(registry, transports, server_config):
    await registry.add_server(server_config)

    assert await registry.remove_server("zm1")

    assert registry.get_server("zm1") is None
    assert not transports["zm1"].ready
    assert await registry.remove_server("zm1") is False


async def test_update_server_replaces_instance(registry, server_config):
    old = await registry.add_server(server_config)

    new = await registry.update_server(replace(server_config, name="Renamed"))

    assert new is not old
    assert not old.is_running()
    assert new.is_running()
    assert registry.get_server("zm1").name == "Renamed"
    await registry.stop_all()


async def test_get_server_by_address(registry, server_config, second_config):
    await registry.add_server(server_config, start=False)
    await registry.add_server(second_config, start=False)

    assert registry.get_server_by_address("127.0.0.1:4977").id == "zm2"
    assert registry.get_server_by_address("127.0.0.1", 4976).id == "zm1"
    assert registry.get_server_by_address("10.9.9.9:4976") is None
    assert registry.get_server_by_address("127.0.0.1:notaport") is None
    assert registry.get_server_by_address("[127.0.0.1]:4976").id == "zm1"
    assert registry.get_server_by_address("::1") is None
    await registry.stop_all()


async def test_start_all_reports_each_server(registry, transports, server_config, second_config):
    transports["zm2"] = FakeTransport()
    transports["zm2"].fail_with = RCONConnectionError("down")

    results = await registry.start_all([server_config, second_config])

    assert results == {"zm1": True, "zm2": False}
    await registry.stop_all()
    assert registry.get_servers() == []


# ============================================================================
# EVENTS
# ============================================================================


async def test_instance_events_are_forwarded(registry, recorder, server_config):
    queue = registry.events.subscribe()

    await registry.add_server(server_config)

    change = await next_event(queue, EventType.SERVER_STATUS_CHANGE)
    assert change.data["new_status"] == "online"
    start = await next_event(queue, EventType.SERVER_START)
    assert start.server_id == "zm1"
    assert any(e["type"] == EventRecorder.EVENT_SERVER_STATUS for e in recorder.events)

    await registry.stop_all()
    stop = await next_event(queue, EventType.SERVER_STOP)
    assert stop.server_id == "zm1"


# ============================================================================
# COMMANDS
# ============================================================================


async def test_broadcast(registry, transports, server_config, second_config):
    await registry.start_all([server_config, second_config])
    transports["zm2"].fail_with = RCONConnectionError("down")

    results = await registry.broadcast("restart in 5 minutes")

    assert results == {
        "Zombies": {"success": True},
        "Zombies 2": {"success": False},
    }
    assert transports["zm1"].sent[-1] == 'say "restart in 5 minutes"'
    await registry.stop_all()


async def test_kick_and_players_by_server(registry, transports, server_config):
    transports["zm1"] = FakeTransport()
    transports["zm1"].default_status = status_response([t6_line(1, "AAA111", "Alice")])
    await registry.add_server(server_config)
    await asyncio.sleep(0.05)
    await registry.check_all_servers()

    assert [p.name for p in registry.get_players("zm1")] == ["Alice"]
    assert registry.get_player_count() == 1

    assert await registry.kick_player("zm1", "Alice", "afk", SYSTEM_ORIGIN)
    assert registry.get_player_count("zm1") == 0
    assert await registry.kick_player("nope", "Alice", "afk", SYSTEM_ORIGIN) is False
    assert registry.get_players("nope") == []
    await registry.stop_all()


async def test_check_all_servers_marks_unreachable(registry, transports, server_config):
    await registry.add_server(server_config)
    transports["zm1"].fail_with = RCONConnectionError("down")

    statuses = await registry.check_all_servers()

    assert statuses == {"zm1": "error"}
    await registry.stop_all()


async def test_health_check_retries_failed_start(registry, transports, server_config):
    transports["zm1"] = FakeTransport()
    transports["zm1"].fail_with = RCONConnectionError("down")
    instance = await registry.add_server(server_config)
    assert instance.status == ServerStatus.ERROR
    assert not instance.is_running()

    transports["zm1"].fail_with = None
    statuses = await registry.check_all_servers()

    assert statuses == {"zm1": "online"}
    assert instance.is_running()
    await registry.stop_all()


async def test_health_check_leaves_stopped_server_alone(registry, transports, server_config):
    await registry.add_server(server_config)
    await registry.stop_server("zm1")
    sent = len(transports["zm1"].sent)

    statuses = await registry.check_all_servers()

    assert statuses == {"zm1": "offline"}
    assert len(transports["zm1"].sent) == sent
    await registry.stop_all()


async def test_get_status(registry, server_config):
    await registry.add_server(server_config)

    status = await registry.get_status("zm1")

    assert status["status"] == "online"
    assert await registry.get_status("missing") is None
    await registry.stop_all()


async def test_tell_staff(registry):
    assert await registry.tell_staff("hello") is False

    registry.notifier = MagicMock()
    registry.notifier.notify = AsyncMock(return_value=True)
    assert await registry.tell_staff("hello")
    registry.notifier.notify.assert_awaited_once_with("Server notice", "hello")
