import pytest

from agenda_sync.utils.websocket_manager import ConnectionInfo, WebSocketManager


class _FakeSocket:
    def __init__(self, *, on_send=None, should_fail: bool = False):
        self._on_send = on_send
        self._should_fail = should_fail
        self.accepted = False
        self.sent = []

    async def accept(self):
        self.accepted = True

    async def send_json(self, message):
        if self._on_send:
            self._on_send()
        if self._should_fail:
            raise RuntimeError("send failed")
        self.sent.append(message)


@pytest.mark.anyio("asyncio")
async def test_broadcast_uses_snapshot_when_connections_change():
    manager = WebSocketManager()
    room_id = "ROOM01"

    def _disconnect_peer():
        manager.disconnect(room_id, "conn-b")

    manager.active_connections[room_id] = {
        "conn-a": ConnectionInfo(
            id="conn-a", websocket=_FakeSocket(on_send=_disconnect_peer)
        ),
        "conn-b": ConnectionInfo(id="conn-b", websocket=_FakeSocket()),
    }

    await manager.broadcast(room_id, {"type": "STATE"})

    assert "conn-a" in manager.active_connections[room_id]
    assert "conn-b" not in manager.active_connections[room_id]


@pytest.mark.anyio("asyncio")
async def test_broadcast_drops_failed_connections():
    manager = WebSocketManager()
    room_id = "ROOM02"
    manager.active_connections[room_id] = {
        "conn-ok": ConnectionInfo(id="conn-ok", websocket=_FakeSocket()),
        "conn-fail": ConnectionInfo(
            id="conn-fail", websocket=_FakeSocket(should_fail=True)
        ),
    }

    dropped = await manager.broadcast(room_id, {"type": "STATE"})

    assert [connection.id for connection in dropped] == ["conn-fail"]
    assert "conn-ok" in manager.active_connections[room_id]
    assert "conn-fail" not in manager.active_connections[room_id]


@pytest.mark.anyio("asyncio")
async def test_connect_identify_and_disconnect():
    manager = WebSocketManager()
    socket = _FakeSocket()

    connection_id = await manager.connect(socket, "ROOM03")
    assert socket.accepted is True
    assert manager.connection_count() == 1

    connection = manager.identify(
        "ROOM03",
        connection_id,
        client_id=None,
        user_id="user-7",
        host_key=None,
        display_name="Sam",
    )
    assert connection.greeted is True
    assert connection.identity == "user-7"

    removed = manager.disconnect("ROOM03", connection_id)
    assert removed is connection
    assert "ROOM03" not in manager.active_connections
    assert manager.disconnect("ROOM03", connection_id) is None


@pytest.mark.anyio("asyncio")
async def test_broadcast_can_skip_sender():
    manager = WebSocketManager()
    sender, peer = _FakeSocket(), _FakeSocket()
    manager.active_connections["ROOM04"] = {
        "sender": ConnectionInfo(id="sender", websocket=sender),
        "peer": ConnectionInfo(id="peer", websocket=peer),
    }

    await manager.broadcast("ROOM04", {"type": "STATE"}, skip_connection="sender")

    assert sender.sent == []
    assert peer.sent == [{"type": "STATE"}]


def test_identify_unknown_connection_returns_none():
    manager = WebSocketManager()
    assert (
        manager.identify(
            "ROOM05",
            "missing",
            client_id="c",
            user_id=None,
            host_key=None,
            display_name=None,
        )
        is None
    )
