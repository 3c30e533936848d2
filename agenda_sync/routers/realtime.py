import logging
from typing import Dict

from fastapi import APIRouter, Request, WebSocket, WebSocketDisconnect

from agenda_sync.services.room_actor import RoomRegistry
from agenda_sync.utils.identifiers import normalize_room_id

router = APIRouter(tags=["realtime"])

logger = logging.getLogger(__name__)


@router.post("/room/create")
async def create_room(request: Request) -> Dict[str, str]:
    """Reserve a standalone room; whoever presents the returned key is its host."""
    registry: RoomRegistry = request.app.state.room_registry
    room_id, host_key = registry.create_room()
    return {"roomId": room_id, "hostKey": host_key}


@router.websocket("/ws")
async def room_socket(websocket: WebSocket) -> None:
    """
    Realtime room endpoint. The first message must be HELLO; every later
    message is handled by the room's actor in arrival order.
    """
    room_id = normalize_room_id(
        websocket.query_params.get("room") or websocket.headers.get("x-room-id")
    )
    if not room_id:
        await websocket.close(code=1008, reason="room is required")
        return

    registry: RoomRegistry = websocket.app.state.room_registry
    connection_id = await registry.manager.connect(websocket, room_id)
    actor = registry.get_or_create(room_id)

    try:
        while True:
            raw = await websocket.receive_text()
            await actor.handle_message(connection_id, raw)
    except WebSocketDisconnect:
        logger.debug(
            "WebSocketDisconnect: room_id=%s connection_id=%s", room_id, connection_id
        )
    finally:
        await actor.disconnect(connection_id)
        registry.release(room_id)
