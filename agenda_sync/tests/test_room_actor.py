import asyncio
import json

import pytest

from agenda_sync.services.host_policy import HostAllowListConfig
from agenda_sync.services.room_actor import RoomActor, RoomRegistry
from agenda_sync.utils.websocket_manager import WebSocketManager

T0 = 1_700_000_000_000
ROOM_KEY = "ROOMKEY123456789"


class _FakeSocket:
    def __init__(self):
        self.sent = []
        self.broken = False

    async def accept(self):
        return None

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    def of_type(self, message_type):
        return [message for message in self.sent if message["type"] == message_type]


def _actor(host_key=ROOM_KEY, hosts="host-1", window_ms=500):
    manager = WebSocketManager()
    actor = RoomActor(
        "ROOM01",
        manager,
        HostAllowListConfig.parse(hosts),
        clock=lambda: T0,
        host_key=host_key,
        vote_batch_window_ms=window_ms,
    )
    return actor, manager


async def _join(actor, manager, **hello):
    socket = _FakeSocket()
    connection_id = await manager.connect(socket, actor.room_id)
    await actor.handle_message(connection_id, json.dumps({"type": "HELLO", **hello}))
    return connection_id, socket


async def _send(actor, connection_id, **message):
    await actor.handle_message(connection_id, json.dumps(message))


@pytest.mark.anyio("asyncio")
async def test_hello_with_room_key_grants_host():
    actor, manager = _actor()

    _, host = await _join(actor, manager, clientId="c-host", hostKey=ROOM_KEY)
    _, guest = await _join(actor, manager, clientId="c-guest", displayName="Gus")

    assert host.of_type("HELLO_ACK")[0]["isHost"] is True
    assert guest.of_type("HELLO_ACK")[0]["isHost"] is False
    assert actor.session.host_user_id == "c-host"
    state = guest.of_type("STATE")[-1]["state"]
    assert state["attendance"]["c-guest"]["displayName"] == "Gus"
    assert ROOM_KEY not in json.dumps(guest.sent)
    assert ROOM_KEY not in json.dumps(host.sent)


@pytest.mark.anyio("asyncio")
async def test_messages_before_hello_are_rejected():
    actor, manager = _actor()
    socket = _FakeSocket()
    connection_id = await manager.connect(socket, actor.room_id)

    await _send(actor, connection_id, type="TIMER_START")
    await actor.handle_message(connection_id, "{not json")

    assert socket.sent == [
        {"type": "ERROR", "error": "hello_required", "attempted": "TIMER_START"},
        {"type": "ERROR", "error": "invalid_json", "attempted": None},
    ]


@pytest.mark.anyio("asyncio")
async def test_hello_without_identity_is_rejected():
    actor, manager = _actor()
    _, socket = await _join(actor, manager, displayName="Anon")

    assert socket.sent == [
        {"type": "ERROR", "error": "missing_identity", "attempted": "HELLO"}
    ]
    assert actor.session is None


@pytest.mark.anyio("asyncio")
async def test_non_host_commands_get_not_host_error():
    actor, manager = _actor()
    await _join(actor, manager, clientId="c-host", hostKey=ROOM_KEY)
    guest_id, guest = await _join(actor, manager, clientId="c-guest")
    revision = actor.session.revision

    await _send(actor, guest_id, type="AGENDA_ADD", title="Hijack")
    await _send(actor, guest_id, type="TIMER_START")
    await _send(actor, guest_id, type="NOPE")

    errors = guest.of_type("ERROR")
    assert errors[0] == {"type": "ERROR", "error": "not_host", "attempted": "AGENDA_ADD"}
    assert errors[1] == {"type": "ERROR", "error": "not_host", "attempted": "TIMER_START"}
    assert errors[2]["error"] == "unknown_type"
    assert actor.session.revision == revision
    assert actor.session.agenda == []


@pytest.mark.anyio("asyncio")
async def test_host_mutations_broadcast_state():
    actor, manager = _actor()
    host_id, host = await _join(actor, manager, clientId="c-host", hostKey=ROOM_KEY)
    _, guest = await _join(actor, manager, clientId="c-guest")
    before = actor.session.revision

    await _send(actor, host_id, type="AGENDA_ADD", title="Budget", durationSec=120)
    await _send(actor, host_id, type="TIMER_START")

    assert actor.session.revision == before + 2
    latest = guest.of_type("STATE")[-1]
    assert latest["state"]["agenda"][0]["title"] == "Budget"
    assert latest["state"]["timer"]["running"] is True
    assert latest["serverNow"] == T0


@pytest.mark.anyio("asyncio")
async def test_handler_errors_return_codes():
    actor, manager = _actor()
    host_id, host = await _join(actor, manager, clientId="c-host", hostKey=ROOM_KEY)

    await _send(actor, host_id, type="TIMER_EXTEND", seconds="lots")
    await _send(actor, host_id, type="AGENDA_SET_ACTIVE", agendaId="AGD-NONE")
    await _send(actor, host_id, type="VOTE_CAST", optionId="opt1")

    codes = [message["error"] for message in host.of_type("ERROR")]
    assert codes == ["invalid_seconds", "agenda_not_found", "vote_not_open"]


@pytest.mark.anyio("asyncio")
async def test_malformed_values_get_error_frames():
    actor, manager = _actor()
    host_id, host = await _join(actor, manager, clientId="c-host", hostKey=ROOM_KEY)
    revision = actor.session.revision

    await actor.handle_message(host_id, '{"type": "TIMER_EXTEND", "seconds": 1e400}')
    await actor.handle_message(
        host_id, '{"type": "AGENDA_ADD", "title": "x", "durationSec": Infinity}'
    )
    await actor.handle_message(host_id, '{"type": ["TIMER_START"]}')

    errors = host.of_type("ERROR")
    assert [message["error"] for message in errors] == [
        "invalid_seconds",
        "invalid_duration",
        "unknown_type",
    ]
    assert errors[-1]["attempted"] is None
    assert actor.session.revision == revision
    assert actor.session.agenda == []


@pytest.mark.anyio("asyncio")
async def test_time_ping_answers_with_server_time():
    actor, manager = _actor()
    socket = _FakeSocket()
    connection_id = await manager.connect(socket, actor.room_id)

    await _send(actor, connection_id, type="TIME_PING", clientSentAt=123)

    assert socket.sent == [{"type": "TIME_PONG", "clientSentAt": 123, "serverNow": T0}]


@pytest.mark.anyio("asyncio")
async def test_vote_casts_are_coalesced_into_one_broadcast():
    actor, manager = _actor(window_ms=50)
    host_id, host = await _join(actor, manager, clientId="c-host", hostKey=ROOM_KEY)
    voters = [await _join(actor, manager, clientId=f"c-{index}") for index in range(15)]
    await _send(actor, host_id, type="VOTE_OPEN", question="Go?", options=["Yes", "No"])
    states_before = len(host.of_type("STATE"))

    for connection_id, _ in voters:
        await _send(actor, connection_id, type="VOTE_CAST", optionIndex=0)

    assert actor.pending_vote_broadcast is True
    assert len(host.of_type("STATE")) == states_before

    await asyncio.sleep(0.2)

    states = host.of_type("STATE")
    assert len(states) == states_before + 1
    assert len(states[-1]["state"]["vote"]["votesByUserId"]) == 15
    assert actor.pending_vote_broadcast is False


@pytest.mark.anyio("asyncio")
async def test_disconnect_marks_attendee_left():
    actor, manager = _actor()
    _, host = await _join(actor, manager, clientId="c-host", hostKey=ROOM_KEY)
    guest_id, _ = await _join(actor, manager, clientId="c-guest")

    await actor.disconnect(guest_id)

    assert actor.session.attendance["c-guest"].left_at == T0
    assert host.of_type("STATE")[-1]["state"]["attendance"]["c-guest"]["leftAt"] == T0


@pytest.mark.anyio("asyncio")
async def test_allow_list_room_latches_allowed_user():
    actor, manager = _actor(host_key=None)

    _, guest = await _join(actor, manager, userId="guest-9")
    _, host = await _join(actor, manager, user={"id": "host-1"})

    assert guest.of_type("HELLO_ACK")[0]["isHost"] is False
    assert host.of_type("HELLO_ACK")[0]["isHost"] is True
    assert actor.session.host_policy.mode == "allow_list"
    assert actor.session.host_user_id == "host-1"


@pytest.mark.anyio("asyncio")
async def test_registry_creates_rooms_with_keys():
    registry = RoomRegistry(WebSocketManager(), HostAllowListConfig.parse(""))

    room_id, host_key = registry.create_room()

    assert len(room_id) == 6
    assert len(host_key) == 16
    assert registry.get(room_id) is registry.get_or_create(room_id)
    assert registry.diagnostics() == {"rooms": 1, "connections": 0}
    await registry.shutdown()


@pytest.mark.anyio("asyncio")
async def test_votes_spread_over_several_windows_broadcast_once():
    actor, manager = _actor(window_ms=100)
    host_id, host = await _join(actor, manager, clientId="c-host", hostKey=ROOM_KEY)
    voters = [await _join(actor, manager, clientId=f"c-{index}") for index in range(15)]
    await _send(actor, host_id, type="VOTE_OPEN", question="Go?", options=["Yes", "No"])
    states_before = len(host.of_type("STATE"))

    for connection_id, _ in voters:
        await _send(actor, connection_id, type="VOTE_CAST", optionIndex=1)
        await asyncio.sleep(0.06)

    assert len(host.of_type("STATE")) == states_before

    await asyncio.sleep(0.3)

    states = host.of_type("STATE")
    assert len(states) == states_before + 1
    assert len(states[-1]["state"]["vote"]["votesByUserId"]) == 15


@pytest.mark.anyio("asyncio")
async def test_socket_dropped_during_broadcast_is_marked_left():
    actor, manager = _actor()
    host_id, host = await _join(actor, manager, clientId="c-host", hostKey=ROOM_KEY)
    guest_id, guest = await _join(actor, manager, clientId="c-guest")
    guest.broken = True
    revision = actor.session.revision

    await _send(actor, host_id, type="AGENDA_ADD", title="Budget")

    assert manager.get(actor.room_id, guest_id) is None
    assert actor.session.attendance["c-guest"].left_at == T0
    assert actor.session.revision == revision + 2
    latest = host.of_type("STATE")[-1]["state"]
    assert latest["attendance"]["c-guest"]["leftAt"] == T0

    await actor.disconnect(guest_id)
    assert actor.session.attendance["c-guest"].left_at == T0


@pytest.mark.anyio("asyncio")
async def test_registry_releases_rooms_nobody_greeted():
    manager = WebSocketManager()
    registry = RoomRegistry(manager, HostAllowListConfig.parse("host-1"))
    reserved_id, _ = registry.create_room()

    socket = _FakeSocket()
    connection_id = await manager.connect(socket, "LURKER")
    idle = registry.get_or_create("LURKER")
    assert registry.release("LURKER") is False

    await idle.disconnect(connection_id)
    assert registry.release("LURKER") is True
    assert registry.get("LURKER") is None

    greeted = registry.get_or_create("TALKER")
    connection_id = await manager.connect(_FakeSocket(), "TALKER")
    await greeted.handle_message(
        connection_id, json.dumps({"type": "HELLO", "clientId": "c-1"})
    )
    await greeted.disconnect(connection_id)

    assert registry.release("TALKER") is False
    assert registry.release(reserved_id) is False
    assert registry.diagnostics()["rooms"] == 2
