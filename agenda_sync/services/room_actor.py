"""One in-memory actor per realtime room.

Every message for a room is handled under the room's lock, one at a time, in
arrival order. Successful mutations broadcast a full ``STATE`` snapshot;
vote casts are coalesced into a single broadcast once casting goes quiet.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from agenda_sync.services import session_machine as machine
from agenda_sync.services.errors import (
    SessionError,
    SessionNotFound,
    SessionValidationError,
)
from agenda_sync.services.host_policy import (
    AllowList,
    HostAccess,
    HostAllowListConfig,
    HostCredential,
    SharedSecret,
)
from agenda_sync.services.session_machine import Session
from agenda_sync.utils.identifiers import new_host_key, new_room_id
from agenda_sync.utils.websocket_manager import ConnectionInfo, WebSocketManager

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]
Handler = Callable[[Session, JSONCompatibleDict, int, ConnectionInfo], bool]

_AGENDA_FIELD_ALIASES = {
    "title": "title",
    "durationSec": "duration_sec",
    "notes": "notes",
    "type": "type",
    "description": "description",
    "link": "link",
    "category": "category",
    "onBallot": "on_ballot",
}


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _hello_user_id(message: JSONCompatibleDict) -> Optional[str]:
    if message.get("userId") is not None:
        return _optional_str(message["userId"])
    user = message.get("user")
    if isinstance(user, dict):
        if user.get("id") is not None:
            return _optional_str(user["id"])
        nested = user.get("user")
        if isinstance(nested, dict) and nested.get("id") is not None:
            return _optional_str(nested["id"])
    return None


def _agenda_fields(message: JSONCompatibleDict) -> Dict[str, Any]:
    return {
        field: message[key]
        for key, field in _AGENDA_FIELD_ALIASES.items()
        if key in message and key != "title"
    }


def _require_number(value: Any) -> Any:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SessionValidationError("invalid_seconds", "seconds must be a number")
    return value


class RoomActor:
    def __init__(
        self,
        room_id: str,
        manager: WebSocketManager,
        host_config: HostAllowListConfig,
        *,
        clock: Callable[[], int] = machine.now_ms,
        host_key: Optional[str] = None,
        vote_batch_window_ms: int = 500,
        allow_host_key_fallback: bool = True,
        max_extension_multiple: float = 3.0,
    ) -> None:
        self.room_id = room_id
        self.session: Optional[Session] = None
        self._manager = manager
        self._host_config = host_config
        self._clock = clock
        self._room_host_key = host_key
        self._vote_window = vote_batch_window_ms / 1000
        self._allow_fallback = allow_host_key_fallback
        self._max_extension_multiple = max_extension_multiple
        self._lock = asyncio.Lock()
        self._vote_task: Optional[asyncio.Task] = None
        self._handlers: Dict[str, Handler] = {
            "AGENDA_ADD": self._agenda_add,
            "AGENDA_UPDATE": self._agenda_update,
            "AGENDA_DELETE": self._agenda_delete,
            "AGENDA_SET_ACTIVE": self._agenda_set_active,
            "AGENDA_NEXT": lambda session, msg, now, conn: machine.next_agenda_item(
                session, now
            ),
            "AGENDA_PREV": lambda session, msg, now, conn: machine.previous_agenda_item(
                session, now
            ),
            "TIMER_START": lambda session, msg, now, conn: machine.timer_start(
                session, now
            ),
            "TIMER_PAUSE": lambda session, msg, now, conn: machine.timer_pause(
                session, now
            ),
            "TIMER_RESUME": lambda session, msg, now, conn: machine.timer_resume(
                session, now
            ),
            "TIMER_RESET": lambda session, msg, now, conn: machine.timer_reset(
                session, now
            ),
            "TIMER_EXTEND": self._timer_extend,
            "VOTE_OPEN": lambda session, msg, now, conn: machine.open_vote(
                session, msg.get("question"), msg.get("options") or [], now
            ),
            "VOTE_CLOSE": lambda session, msg, now, conn: machine.close_vote(
                session, now
            )
            is not None,
            "VOTE_CAST": self._vote_cast,
            "MEETING_START": lambda session, msg, now, conn: machine.start_meeting(
                session, now, start_timer=bool(msg.get("startTimer"))
            ),
        }

    @property
    def pending_vote_broadcast(self) -> bool:
        return self._vote_task is not None and not self._vote_task.done()

    # ------------------------------------------------------------------ #
    # Entry points
    # ------------------------------------------------------------------ #

    async def handle_message(self, connection_id: str, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            await self._send_error(connection_id, "invalid_json", None)
            return
        if not isinstance(message, dict):
            await self._send_error(connection_id, "invalid_json", None)
            return

        if message.get("type") == "TIME_PING":
            await self._manager.send_personal_message(
                self.room_id,
                connection_id,
                {
                    "type": "TIME_PONG",
                    "clientSentAt": message.get("clientSentAt"),
                    "serverNow": self._clock(),
                },
            )
            return

        async with self._lock:
            await self._dispatch(connection_id, message)

    async def disconnect(self, connection_id: str) -> None:
        connection = self._manager.disconnect(self.room_id, connection_id)
        if connection is None:
            return
        async with self._lock:
            now = self._clock()
            if self._mark_departed(connection, now):
                self.session.bump(now)
                await self._broadcast_state(now)

    @property
    def reserved(self) -> bool:
        return self._room_host_key is not None

    def idle(self) -> bool:
        """True when the room holds no session or reservation and has no sockets left."""
        return (
            self.session is None
            and not self.reserved
            and not self._manager.active_users(self.room_id)
        )

    def _mark_departed(self, connection: ConnectionInfo, now: int) -> bool:
        if self.session is None or not connection.greeted:
            return False
        identity = connection.identity
        if any(
            other.identity == identity
            for other in self._manager.active_users(self.room_id).values()
        ):
            return False
        return machine.mark_left(self.session, identity, now)

    async def close(self) -> None:
        if self._vote_task is not None:
            self._vote_task.cancel()
            self._vote_task = None

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    async def _dispatch(self, connection_id: str, message: JSONCompatibleDict) -> None:
        message_type = message.get("type")
        connection = self._manager.get(self.room_id, connection_id)
        if connection is None:
            return
        if not isinstance(message_type, str):
            await self._send_error(connection_id, "unknown_type", None)
            return

        if message_type == "HELLO":
            await self._hello(connection, message)
            return
        if not connection.greeted or self.session is None:
            await self._send_error(connection_id, "hello_required", message_type)
            return

        handler = self._handlers.get(message_type)
        if handler is None:
            await self._send_error(connection_id, "unknown_type", message_type)
            return

        session = self.session
        if message_type != "VOTE_CAST" and not self._is_host(session, connection):
            logger.info(
                "Rejected host command: room_id=%s identity=%s type=%s",
                self.room_id,
                connection.identity,
                message_type,
            )
            await self._send_error(connection_id, "not_host", message_type)
            return

        now = self._clock()
        try:
            changed = handler(session, message, now, connection)
        except SessionError as exc:
            await self._send_error(connection_id, exc.code, message_type, exc.message)
            return
        if not changed:
            return

        session.bump(now)
        if message_type == "VOTE_CAST":
            self._schedule_vote_broadcast()
        else:
            await self._broadcast_state(now)

    def _is_host(self, session: Session, connection: ConnectionInfo) -> bool:
        credential = HostCredential(
            client_id=connection.client_id,
            user_id=connection.user_id,
            host_key=connection.host_key,
        )
        return session.host_policy.check(session, credential) is HostAccess.GRANTED

    async def _hello(self, connection: ConnectionInfo, message: JSONCompatibleDict) -> None:
        client_id = _optional_str(message.get("clientId"))
        user_id = _hello_user_id(message)
        if not (client_id or user_id):
            await self._send_error(connection.id, "missing_identity", "HELLO")
            return
        host_key = _optional_str(message.get("hostKey"))
        display_name = (
            _optional_str(message.get("displayName"))
            or _optional_str(message.get("username"))
            or "Guest"
        )

        now = self._clock()
        if self.session is None:
            self.session = machine.new_session(self.room_id, self._new_policy(host_key), now)
            logger.info(
                "Room session created: room_id=%s mode=%s",
                self.room_id,
                self.session.host_policy.mode,
            )
        session = self.session

        connection = self._manager.identify(
            self.room_id,
            connection.id,
            client_id=client_id,
            user_id=user_id,
            host_key=host_key,
            display_name=display_name,
        )
        if connection is None:
            return
        credential = HostCredential(client_id=client_id, user_id=user_id, host_key=host_key)
        changed = session.host_policy.try_latch(
            session, credential, allow_fallback=self._allow_fallback
        )
        changed = machine.record_attendance(session, credential.identity, display_name, now) or changed
        if changed:
            session.bump(now)

        is_host = self._is_host(session, connection)
        await self._manager.send_personal_message(
            self.room_id,
            connection.id,
            {
                "type": "HELLO_ACK",
                "isHost": is_host,
                "clientId": credential.identity,
                "serverNow": now,
            },
        )
        await self._broadcast_state(now)

    def _new_policy(self, host_key: Optional[str]):
        if self._room_host_key:
            return SharedSecret(key=self._room_host_key)
        if host_key:
            return SharedSecret(key=host_key)
        return AllowList(config=self._host_config)

    # ------------------------------------------------------------------ #
    # Handlers
    # ------------------------------------------------------------------ #

    def _agenda_add(
        self, session: Session, message: JSONCompatibleDict, now: int, _: ConnectionInfo
    ) -> bool:
        title = message.get("title")
        if not isinstance(title, str):
            raise SessionValidationError("missing_title", "Agenda item title is required")
        fields = _agenda_fields(message)
        duration = fields.pop("duration_sec", 0)
        machine.add_agenda_item(session, title, now, duration_sec=duration, **fields)
        return True

    def _agenda_update(
        self, session: Session, message: JSONCompatibleDict, now: int, _: ConnectionInfo
    ) -> bool:
        changes = _agenda_fields(message)
        if "title" in message:
            changes["title"] = message["title"]
        return machine.update_agenda_item(session, str(message.get("agendaId")), changes, now)

    def _agenda_delete(
        self, session: Session, message: JSONCompatibleDict, now: int, _: ConnectionInfo
    ) -> bool:
        return machine.delete_agenda_item(session, str(message.get("agendaId")), now)

    def _agenda_set_active(
        self, session: Session, message: JSONCompatibleDict, now: int, _: ConnectionInfo
    ) -> bool:
        if not machine.set_active_item(session, message.get("agendaId"), now):
            raise SessionNotFound("agenda_not_found", "Agenda item not found")
        return True

    def _timer_extend(
        self, session: Session, message: JSONCompatibleDict, now: int, _: ConnectionInfo
    ) -> bool:
        seconds = _require_number(message.get("seconds"))
        return machine.extend_timer(
            session, seconds, now, max_multiple=self._max_extension_multiple
        )

    def _vote_cast(
        self,
        session: Session,
        message: JSONCompatibleDict,
        now: int,
        connection: ConnectionInfo,
    ) -> bool:
        selector = message.get("optionId")
        if selector is None:
            selector = message.get("optionIndex")
        return machine.cast_vote(session, connection.identity, selector, now)

    # ------------------------------------------------------------------ #
    # Outbound
    # ------------------------------------------------------------------ #

    async def _send_error(
        self,
        connection_id: str,
        code: str,
        attempted: Any,
        message: Optional[str] = None,
    ) -> None:
        payload: JSONCompatibleDict = {"type": "ERROR", "error": code, "attempted": attempted}
        if message:
            payload["message"] = message
        await self._manager.send_personal_message(self.room_id, connection_id, payload)

    async def _broadcast_state(self, now: Optional[int] = None) -> None:
        if self.session is None:
            return
        now = self._clock() if now is None else now
        dropped = await self._manager.broadcast(
            self.room_id,
            {
                "type": "STATE",
                "state": machine.snapshot(self.session, now),
                "serverNow": now,
            },
        )
        # Failed sends never reach disconnect() with their metadata.
        departed = [self._mark_departed(connection, now) for connection in dropped]
        if any(departed):
            self.session.bump(now)
            await self._broadcast_state(now)

    def _schedule_vote_broadcast(self) -> None:
        if self._vote_task is not None and not self._vote_task.done():
            self._vote_task.cancel()
        self._vote_task = asyncio.create_task(self._flush_votes_later())

    async def _flush_votes_later(self) -> None:
        await asyncio.sleep(self._vote_window)
        async with self._lock:
            if self._vote_task is asyncio.current_task():
                self._vote_task = None
            await self._broadcast_state()


class RoomRegistry:
    """Maps room ids to their actors; rooms live for the life of the process."""

    def __init__(
        self,
        manager: WebSocketManager,
        host_config: HostAllowListConfig,
        *,
        clock: Callable[[], int] = machine.now_ms,
        vote_batch_window_ms: int = 500,
        allow_host_key_fallback: bool = True,
        max_extension_multiple: float = 3.0,
    ) -> None:
        self.manager = manager
        self._host_config = host_config
        self._clock = clock
        self._vote_batch_window_ms = vote_batch_window_ms
        self._allow_host_key_fallback = allow_host_key_fallback
        self._max_extension_multiple = max_extension_multiple
        self._rooms: Dict[str, RoomActor] = {}

    def _build(self, room_id: str, host_key: Optional[str] = None) -> RoomActor:
        actor = RoomActor(
            room_id,
            self.manager,
            self._host_config,
            clock=self._clock,
            host_key=host_key,
            vote_batch_window_ms=self._vote_batch_window_ms,
            allow_host_key_fallback=self._allow_host_key_fallback,
            max_extension_multiple=self._max_extension_multiple,
        )
        self._rooms[room_id] = actor
        return actor

    def create_room(self) -> Tuple[str, str]:
        """Reserve a fresh room in shared-secret mode; returns ``(room_id, host_key)``."""
        room_id = new_room_id()
        while room_id in self._rooms:
            room_id = new_room_id()
        host_key = new_host_key()
        self._build(room_id, host_key)
        logger.info("Room created: room_id=%s", room_id)
        return room_id, host_key

    def get(self, room_id: str) -> Optional[RoomActor]:
        return self._rooms.get(room_id)

    def get_or_create(self, room_id: str) -> RoomActor:
        return self._rooms.get(room_id) or self._build(room_id)

    def release(self, room_id: str) -> bool:
        """Forget a room that never got a session once its last socket leaves."""
        actor = self._rooms.get(room_id)
        if actor is None or not actor.idle():
            return False
        del self._rooms[room_id]
        logger.debug("Released idle room: room_id=%s", room_id)
        return True

    def diagnostics(self) -> JSONCompatibleDict:
        return {
            "rooms": len(self._rooms),
            "connections": self.manager.connection_count(),
        }

    async def shutdown(self) -> None:
        for actor in self._rooms.values():
            await actor.close()
