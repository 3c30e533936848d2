import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect


def _receive_until(websocket, message_type):
    while True:
        message = websocket.receive_json()
        if message["type"] == message_type:
            return message


def _create_room(client: TestClient):
    response = client.post("/room/create")
    assert response.status_code == 200
    body = response.json()
    return body["roomId"], body["hostKey"]


def test_create_room_returns_id_and_key(client: TestClient):
    room_id, host_key = _create_room(client)

    assert len(room_id) == 6
    assert room_id.isalnum() and room_id.upper() == room_id
    assert len(host_key) == 16


def test_socket_without_room_is_closed(client: TestClient):
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws") as websocket:
            websocket.receive_json()
    assert excinfo.value.code == 1008


def test_host_and_guest_flow(client: TestClient):
    room_id, host_key = _create_room(client)

    with client.websocket_connect(f"/ws?room={room_id.lower()}") as host:
        host.send_json({"type": "HELLO", "clientId": "c-host", "hostKey": host_key})
        ack = _receive_until(host, "HELLO_ACK")
        assert ack["isHost"] is True
        _receive_until(host, "STATE")

        with client.websocket_connect(f"/ws?room={room_id}") as guest:
            guest.send_json({"type": "HELLO", "clientId": "c-guest", "displayName": "Gus"})
            assert _receive_until(guest, "HELLO_ACK")["isHost"] is False
            joined = _receive_until(guest, "STATE")
            assert "c-guest" in joined["state"]["attendance"]
            assert host_key not in str(joined)

            guest.send_json({"type": "AGENDA_ADD", "title": "Hijack"})
            error = _receive_until(guest, "ERROR")
            assert error["error"] == "not_host"
            assert error["attempted"] == "AGENDA_ADD"

            host.send_json({"type": "AGENDA_ADD", "title": "Budget", "durationSec": 300})
            update = _receive_until(guest, "STATE")
            assert update["state"]["agenda"][0]["title"] == "Budget"
            assert update["state"]["timer"]["remainingSec"] == 300
            assert host_key not in str(update)

            guest.send_json({"type": "TIME_PING", "clientSentAt": 42})
            pong = _receive_until(guest, "TIME_PONG")
            assert pong["clientSentAt"] == 42
            assert isinstance(pong["serverNow"], int)


def test_hello_is_required_first(client: TestClient):
    room_id, _ = _create_room(client)

    with client.websocket_connect(f"/ws?room={room_id}") as websocket:
        websocket.send_json({"type": "TIMER_START"})
        error = websocket.receive_json()

    assert error == {"type": "ERROR", "error": "hello_required", "attempted": "TIMER_START"}


def test_health_counts_rooms(client: TestClient):
    _create_room(client)
    body = client.get("/health").json()
    assert body["realtime"]["rooms"] == 1
