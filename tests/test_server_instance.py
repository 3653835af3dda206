import asyncio

import pytest

from services.collaborators import EventRecorder, ModerationType, SYSTEM_ORIGIN
from services.events import EventType
from services.player import GuidState
from services.rcon import RCONConnectionError, RCONTimeoutError
from services.server_instance import ServerStatus

from conftest import status_response, t6_line


def event_types(recorder, event_type):
    return [e for e in recorder.events if e["type"] == event_type]


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ============================================================================
# RECONCILIATION
# ============================================================================


async def test_sentinel_guid_confirmed_then_player_leaves(instance, transport, recorder):
    snapshot = status_response([t6_line(3, "0", "Alice")])
    transport.status_replies.extend([
        snapshot,
        status_response([t6_line(3, "ABC123", "Alice")]),
    ])

    assert await instance.poll()

    player = instance.players[3]
    assert player.guid == "ABC123"
    assert player.guid_state == GuidState.CONFIRMED_VIA_SLOT
    assert len(event_types(recorder, EventRecorder.EVENT_PLAYER_CONNECT)) == 1

    # Same snapshot again: no transitions
    transport.status_replies.append(snapshot)
    assert await instance.poll()
    assert instance.players[3] is player
    assert len(event_types(recorder, EventRecorder.EVENT_PLAYER_CONNECT)) == 1
    assert event_types(recorder, EventRecorder.EVENT_PLAYER_DISCONNECT) == []

    # Slot omitted: one disconnect
    transport.status_replies.append(status_response([]))
    assert await instance.poll()
    assert 3 not in instance.players
    assert not player.online
    assert len(event_types(recorder, EventRecorder.EVENT_PLAYER_DISCONNECT)) == 1


async def test_reconcile_is_idempotent(instance, transport):
    snapshot = status_response([
        t6_line(0, "AAA111", "Alice"),
        t6_line(1, "BBB222", "Bob"),
    ])
    transport.default_status = snapshot
    queue = instance.events.subscribe()

    await instance.poll()
    first = dict(instance.players)
    drain(queue)

    await instance.poll()

    assert instance.players == first
    assert [e for e in drain(queue) if e.type in (EventType.PLAYER_CONNECT, EventType.PLAYER_DISCONNECT)] == []


async def test_renamed_slot_is_replaced(instance, transport, recorder):
    transport.status_replies.extend([
        status_response([t6_line(2, "AAA111", "Alice")]),
        status_response([t6_line(2, "CCC333", "Carol")]),
    ])

    await instance.poll()
    alice = instance.players[2]
    await instance.poll()

    assert not alice.online
    assert instance.players[2].name == "Carol"
    assert len(event_types(recorder, EventRecorder.EVENT_PLAYER_DISCONNECT)) == 1


async def test_placeholder_slots_are_ignored(instance, transport):
    transport.status_replies.append(status_response([
        t6_line(0, "AAA111", "Alice"),
        t6_line(1, "0", "Connecting", ping="CNCT"),
    ]))

    await instance.poll()

    assert list(instance.players) == [0]


async def test_stats_track_connections_and_peak(instance, transport):
    transport.status_replies.extend([
        status_response([t6_line(0, "AAA111", "Alice"), t6_line(1, "BBB222", "Bob")]),
        status_response([t6_line(0, "AAA111", "Alice")]),
        status_response([t6_line(0, "AAA111", "Alice"), t6_line(1, "BBB222", "Bob")]),
    ])

    for _ in range(3):
        await instance.poll()

    assert instance.stats.connections_total == 3
    assert instance.stats.peak_players == 2
    assert len(instance.stats.unique_guids) == 2


async def test_poll_failure_sets_error_and_keeps_players(instance, transport):
    transport.status_replies.extend([
        status_response([t6_line(0, "AAA111", "Alice")]),
        RCONTimeoutError("Command timed out: status"),
    ])
    queue = instance.events.subscribe()

    assert await instance.poll()
    assert instance.status == ServerStatus.ONLINE
    assert not await instance.poll()

    assert instance.status == ServerStatus.ERROR
    assert instance.last_error == "Command timed out: status"
    assert 0 in instance.players
    changes = [e.data for e in drain(queue) if e.type == EventType.SERVER_STATUS_CHANGE]
    assert changes[-1]["old_status"] == "online"
    assert changes[-1]["new_status"] == "error"

    # Recovers on the next good tick
    transport.status_replies.append(status_response([t6_line(0, "AAA111", "Alice")]))
    assert await instance.poll()
    assert instance.status == ServerStatus.ONLINE



async def test_unparsable_status_reply_keeps_players(instance, transport):
    transport.status_replies.extend([
        status_response([t6_line(0, "AAA111", "Alice"), t6_line(1, "BBB222", "Bob")]),
        'print\nUnknown command "status"\n',
    ])

    assert await instance.poll()
    alice, bob = instance.players[0], instance.players[1]

    assert not await instance.poll()

    assert instance.status == ServerStatus.ERROR
    assert instance.players == {0: alice, 1: bob}
    assert alice.online and bob.online


async def test_empty_status_table_clears_players(instance, transport):
    transport.status_replies.extend([
        status_response([t6_line(0, "AAA111", "Alice")]),
        status_response([]),
    ])

    await instance.poll()
    assert await instance.poll()

    assert instance.players == {}
    assert instance.status == ServerStatus.ONLINE

async def test_poll_reopens_closed_transport(instance, transport):
    transport.ready = False

    assert await instance.poll()
    assert transport.open_calls == 1


async def test_overlapping_poll_is_skipped(instance, transport):
    transport.gate = asyncio.Event()
    first = asyncio.create_task(instance.poll())
    await asyncio.sleep(0)

    assert await instance.poll() is False

    transport.gate.set()
    assert await first is True


# ============================================================================
# LIFECYCLE
# ============================================================================


async def test_start_and_stop(instance, transport, recorder):
    transport.default_status = status_response([t6_line(0, "AAA111", "Alice")], map_name="zm_nuked")

    assert await instance.start()
    assert instance.is_running()
    assert instance.status == ServerStatus.ONLINE
    assert instance.info["map"] == "zm_nuked"
    assert await instance.start()

    await asyncio.sleep(0.05)
    assert 0 in instance.players

    await instance.stop()

    assert not instance.is_running()
    assert instance.status == ServerStatus.OFFLINE
    assert instance.players == {}
    assert len(event_types(recorder, EventRecorder.EVENT_SERVER_START)) == 1
    assert len(event_types(recorder, EventRecorder.EVENT_SERVER_STOP)) == 1
    assert instance.stats.uptime == 0


async def test_start_fails_when_probe_fails(instance, transport):
    transport.fail_with = RCONConnectionError("down")

    assert await instance.start() is False
    assert instance.status == ServerStatus.ERROR
    assert not instance.is_running()


async def test_stop_abandons_in_flight_tick(instance, transport):
    assert await instance.start()
    transport.gate = asyncio.Event()
    await asyncio.sleep(0.05)
    tick = instance._tick_task
    assert tick is not None and not tick.done()

    await instance.stop()

    assert tick.cancelled()
    assert instance.status == ServerStatus.OFFLINE
    assert not instance.is_running()


async def test_close_releases_transport(instance, transport):
    assert await instance.start()

    await instance.close()

    assert not transport.ready


async def test_refresh_info(instance, transport):
    transport.replies.update({
        "sv_hostname": 'print\n"sv_hostname" is: "^1Zombie ^7Land^7" default: "CoDHost^7"\n',
        "mapname": 'print\n"mapname" is: "zm_highrise^7"\n',
        "sv_maxclients": 'print\n"sv_maxclients" is: "4^7" default: "18^7"\n',
    })

    info = await instance.refresh_info()

    assert info["hostname"] == "Zombie Land"
    assert info["map"] == "zm_highrise"
    assert info["max_clients"] == 4
    assert info["game_type"] is None


# ============================================================================
# QUERIES AND COMMANDS
# ============================================================================


async def populate(instance, transport):
    transport.status_replies.append(status_response([
        t6_line(0, "AAA111", "Alice"),
        t6_line(4, "BBB222", "BobTheBuilder"),
    ]))
    await instance.poll()


async def test_find_player(instance, transport):
    await populate(instance, transport)

    assert instance.find_player(0).name == "Alice"
    assert instance.find_player("4").name == "BobTheBuilder"
    assert instance.find_player("alice").slot == 0
    assert instance.find_player("builder").slot == 4
    assert instance.find_player(9) is None
    assert instance.find_player("nobody") is None


async def test_get_players_sorted_by_slot(instance, transport):
    await populate(instance, transport)

    assert [p.slot for p in instance.get_players()] == [0, 4]
    assert instance.get_player_count() == 2


async def test_kick_player_with_no_connectivity(instance, transport, recorder):
    await populate(instance, transport)
    transport.fail_with = RCONConnectionError("down")

    assert await instance.kick_player("Alice", "afk", SYSTEM_ORIGIN) is False

    assert 0 not in instance.players
    assert recorder.penalties[-1].type == ModerationType.KICK
    assert recorder.penalties[-1].origin is SYSTEM_ORIGIN


async def test_commands_for_unknown_player(instance, transport):
    await populate(instance, transport)

    assert await instance.kick_player("ghost", "x", SYSTEM_ORIGIN) is False
    assert await instance.ban_player(12, "x", SYSTEM_ORIGIN) is False
    assert await instance.temp_ban_player("ghost", "x", SYSTEM_ORIGIN, 60) is False
    assert await instance.report_player("ghost", "x", SYSTEM_ORIGIN) is False
    assert await instance.tell_player("ghost", "hi") is False


async def test_say(instance, transport):
    assert await instance.say("server restarting")
    assert transport.sent[-1] == 'say "server restarting"'


async def test_get_status_snapshot(instance, transport):
    await populate(instance, transport)

    status = await instance.get_status()

    assert status["id"] == "zm1"
    assert status["player_count"] == 2
    assert status["stats"]["connections_total"] == 2
    assert [p["name"] for p in status["players"]] == ["Alice", "BobTheBuilder"]


# ============================================================================
# LOG LINES
# ============================================================================


async def test_chat_log_line_is_published(instance):
    queue = instance.events.subscribe()

    event = await instance.handle_log_line("  1:00 say;AAA111;0;Alice;gg")

    assert event is not None
    published = drain(queue)
    assert published[-1].type == EventType.CHAT_MESSAGE
    assert published[-1].data["message"] == "gg"


async def test_unrecognised_log_line(instance):
    assert await instance.handle_log_line("  0:00 ShutdownGame:") is None


async def test_connect_log_line_triggers_poll(instance, transport):
    assert await instance.start()
    await asyncio.sleep(0.05)
    sent_before = transport.sent.count("status")

    await instance.handle_log_line("  0:05 J;AAA111;0;Alice")

    assert transport.sent.count("status") == sent_before + 1
    await instance.stop()
