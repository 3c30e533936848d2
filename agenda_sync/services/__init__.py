"""Service layer: session state machine, stores and realtime rooms."""

from .session_store import SessionStore  # noqa: F401
from .room_actor import RoomActor, RoomRegistry  # noqa: F401

__all__ = [
    "SessionStore",
    "RoomActor",
    "RoomRegistry",
]
