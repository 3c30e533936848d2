"""Revision-tracked, persisted session store used by the HTTP protocol."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from agenda_sync.data.session_repository import SessionRepository
from agenda_sync.services import session_machine as machine
from agenda_sync.services.errors import (
    SessionConflict,
    SessionForbidden,
    SessionNotFound,
    SessionValidationError,
)
from agenda_sync.services.host_policy import (
    AllowList,
    HostAccess,
    HostAllowListConfig,
    HostCredential,
)
from agenda_sync.services.minutes import render_minutes
from agenda_sync.services.session_machine import Session
from agenda_sync.utils.identifiers import clean_session_id, new_session_id

logger = logging.getLogger(__name__)

JSONCompatibleDict = Dict[str, Any]
Transition = Callable[[Session, int], bool]


def _clean_user_id(user_id: Any) -> Optional[str]:
    if user_id is None:
        return None
    cleaned = str(user_id).strip()
    return cleaned or None


class SessionStore:
    """Owns every HTTP session, its revision counter and its durable copy.

    Each mutation runs inside the session's lock: authorize, transition, bump
    the revision, wake long-pollers, then write the document. Reads never take
    the lock and observe the applied in-memory state.
    """

    def __init__(
        self,
        repository: Optional[SessionRepository],
        host_config: HostAllowListConfig,
        *,
        clock: Callable[[], int] = machine.now_ms,
        max_extension_multiple: float = 3.0,
        max_wait_ms: int = 25000,
    ) -> None:
        self._repository = repository
        self._host_config = host_config
        self._clock = clock
        self._max_extension_multiple = max_extension_multiple
        self._max_wait_ms = max_wait_ms
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._change_events: Dict[str, asyncio.Event] = {}

    @property
    def host_config(self) -> HostAllowListConfig:
        return self._host_config

    def load(self) -> int:
        """Populate the store from persistence; returns the number of sessions loaded."""
        if self._repository is None:
            return 0
        loaded = 0
        for document in self._repository.load_all():
            try:
                session = machine.session_from_dict(document, self._host_config)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(
                    "Skipping unreadable session document: id=%s error=%s",
                    document.get("id"),
                    exc,
                )
                continue
            self._sessions[session.id] = session
            loaded += 1
        return loaded

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    def _change_event(self, session_id: str) -> asyncio.Event:
        event = self._change_events.get(session_id)
        if event is None:
            event = asyncio.Event()
            self._change_events[session_id] = event
        return event

    def _notify(self, session_id: str) -> None:
        event = self._change_events.pop(session_id, None)
        if event is not None:
            event.set()

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound()
        return session

    def _envelope(self, session: Session, now: int) -> JSONCompatibleDict:
        return {
            "state": machine.snapshot(session, now),
            "revision": session.revision,
            "serverNow": now,
        }

    def validate_host_access(self, session: Session, user_id: Optional[str]) -> HostAccess:
        """The caller must be this session's host and still globally allowed."""
        credential = HostCredential(user_id=_clean_user_id(user_id))
        return session.host_policy.check(session, credential)

    def _authorize(self, session: Session, user_id: Optional[str]) -> None:
        if _clean_user_id(user_id) is None:
            raise SessionValidationError("missing_userId", "userId is required")
        access = self.validate_host_access(session, user_id)
        if access is HostAccess.GRANTED:
            return
        if access is HostAccess.REVOKED:
            raise SessionForbidden("host_revoked", "Host privileges have been revoked")
        logger.warning(
            "Rejected host command from non-host: session_id=%s user_id=%s",
            session.id,
            user_id,
        )
        raise SessionForbidden("forbidden", "Only the host can do that")

    async def _commit(self, session: Session, now: int) -> None:
        session.bump(now)
        self._notify(session.id)
        if self._repository is not None:
            await asyncio.to_thread(
                self._repository.save, session.id, machine.session_to_dict(session)
            )

    async def _mutate(
        self,
        session_id: str,
        user_id: Optional[str],
        transition: Transition,
        *,
        host_only: bool = True,
    ) -> JSONCompatibleDict:
        session = self.get(session_id)
        async with self._lock_for(session.id):
            if host_only:
                self._authorize(session, user_id)
            if session.ended:
                raise SessionConflict("session_ended", "Session has ended")
            now = self._clock()
            if transition(session, now):
                await self._commit(session, now)
            return self._envelope(session, now)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    async def create_session(
        self,
        user_id: Any,
        username: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> JSONCompatibleDict:
        host_id = _clean_user_id(user_id)
        if host_id is None:
            raise SessionValidationError("missing_userId", "userId is required")
        if not self._host_config.permits(host_id):
            logger.warning("Unauthorized host attempt: user_id=%s", host_id)
            raise SessionForbidden(
                "unauthorized_host", "User not authorized to create meetings"
            )

        requested = None
        if session_id is not None and str(session_id).strip():
            requested = clean_session_id(session_id)
            if requested is None:
                raise SessionValidationError("invalid_request", "sessionId is not valid")
        target_id = requested or new_session_id()

        async with self._lock_for(target_id):
            now = self._clock()
            existing = self._sessions.get(target_id)
            if existing is not None:
                if existing.host_user_id == host_id and not existing.ended:
                    return {"sessionId": target_id, **self._envelope(existing, now)}
                raise SessionConflict("session_exists", "Session id is already in use")

            session = machine.new_session(
                target_id, AllowList(config=self._host_config), now, host_user_id=host_id
            )
            machine.record_attendance(session, host_id, username, now)
            self._sessions[target_id] = session
            await self._commit(session, now)
            logger.info("Session created: session_id=%s host=%s", target_id, host_id)
            return {"sessionId": target_id, **self._envelope(session, now)}

    async def join_session(
        self, session_id: str, user_id: Any, username: Optional[str] = None
    ) -> JSONCompatibleDict:
        participant = _clean_user_id(user_id)
        if participant is None:
            raise SessionValidationError("missing_userId", "userId is required")
        session = self.get(session_id)
        async with self._lock_for(session.id):
            now = self._clock()
            if not session.ended and machine.record_attendance(
                session, participant, username, now
            ):
                await self._commit(session, now)
            return self._envelope(session, now)

    async def poll_state(
        self,
        session_id: str,
        since_revision: Optional[int] = None,
        user_id: Optional[str] = None,
        wait_ms: int = 0,
    ) -> JSONCompatibleDict:
        session = self.get(session_id)
        participant = _clean_user_id(user_id)
        if participant is not None:
            machine.mark_seen(session, participant, self._clock())

        wait = min(max(0, int(wait_ms or 0)), self._max_wait_ms)
        if since_revision is not None and wait > 0 and since_revision >= session.revision:
            await self._wait_for_revision(session, since_revision, wait / 1000)

        now = self._clock()
        if since_revision is not None and since_revision >= session.revision:
            return {"unchanged": True, "revision": session.revision, "serverNow": now}
        return self._envelope(session, now)

    async def _wait_for_revision(
        self, session: Session, since_revision: int, timeout: float
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while session.revision <= since_revision:
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            try:
                await asyncio.wait_for(self._change_event(session.id).wait(), remaining)
            except asyncio.TimeoutError:
                return

    async def end_session(self, session_id: str, user_id: Any) -> JSONCompatibleDict:
        session = self.get(session_id)
        async with self._lock_for(session.id):
            self._authorize(session, user_id)
            now = self._clock()
            if not session.ended:
                machine.end_session(session, now, render_minutes)
                await self._commit(session, now)
                logger.info(
                    "Session ended: session_id=%s revision=%s", session.id, session.revision
                )
            envelope = self._envelope(session, now)
            envelope["minutes"] = session.minutes
            return envelope

    # ------------------------------------------------------------------ #
    # Host commands
    # ------------------------------------------------------------------ #

    async def update_setup(
        self, session_id: str, user_id: Any, meeting_name: Optional[str]
    ) -> JSONCompatibleDict:
        return await self._mutate(
            session_id,
            user_id,
            lambda session, now: machine.update_setup(session, meeting_name, now),
        )

    async def start_meeting(
        self, session_id: str, user_id: Any, start_timer: bool = False
    ) -> JSONCompatibleDict:
        return await self._mutate(
            session_id,
            user_id,
            lambda session, now: machine.start_meeting(
                session, now, start_timer=start_timer
            ),
        )

    async def add_agenda_item(
        self,
        session_id: str,
        user_id: Any,
        title: Any,
        duration_sec: Any = 0,
        **fields: Any,
    ) -> JSONCompatibleDict:
        def _add(session: Session, now: int) -> bool:
            machine.add_agenda_item(
                session, title, now, duration_sec=duration_sec, **fields
            )
            return True

        return await self._mutate(session_id, user_id, _add)

    async def update_agenda_item(
        self, session_id: str, user_id: Any, agenda_id: str, changes: Dict[str, Any]
    ) -> JSONCompatibleDict:
        return await self._mutate(
            session_id,
            user_id,
            lambda session, now: machine.update_agenda_item(
                session, agenda_id, changes, now
            ),
        )

    async def delete_agenda_item(
        self, session_id: str, user_id: Any, agenda_id: str
    ) -> JSONCompatibleDict:
        return await self._mutate(
            session_id,
            user_id,
            lambda session, now: machine.delete_agenda_item(session, agenda_id, now),
        )

    async def reorder_agenda(
        self, session_id: str, user_id: Any, ordered_ids: Iterable[Any]
    ) -> JSONCompatibleDict:
        ids: List[Any] = list(ordered_ids)
        return await self._mutate(
            session_id,
            user_id,
            lambda session, now: machine.reorder_agenda(session, ids, now),
        )

    async def set_active_item(
        self, session_id: str, user_id: Any, agenda_id: str
    ) -> JSONCompatibleDict:
        def _activate(session: Session, now: int) -> bool:
            if not machine.set_active_item(session, agenda_id, now):
                raise SessionNotFound("agenda_not_found", "Agenda item not found")
            return True

        return await self._mutate(session_id, user_id, _activate)

    async def next_agenda_item(self, session_id: str, user_id: Any) -> JSONCompatibleDict:
        return await self._mutate(session_id, user_id, machine.next_agenda_item)

    async def previous_agenda_item(
        self, session_id: str, user_id: Any
    ) -> JSONCompatibleDict:
        return await self._mutate(session_id, user_id, machine.previous_agenda_item)

    async def complete_active_item(
        self, session_id: str, user_id: Any
    ) -> JSONCompatibleDict:
        return await self._mutate(session_id, user_id, machine.complete_active_item)

    async def toggle_ballot(
        self, session_id: str, user_id: Any, agenda_id: str
    ) -> JSONCompatibleDict:
        return await self._mutate(
            session_id,
            user_id,
            lambda session, now: machine.toggle_ballot(session, agenda_id, now),
        )

    async def timer_start(self, session_id: str, user_id: Any) -> JSONCompatibleDict:
        return await self._mutate(session_id, user_id, machine.timer_start)

    async def timer_pause(self, session_id: str, user_id: Any) -> JSONCompatibleDict:
        return await self._mutate(session_id, user_id, machine.timer_pause)

    async def timer_resume(self, session_id: str, user_id: Any) -> JSONCompatibleDict:
        return await self._mutate(session_id, user_id, machine.timer_resume)

    async def timer_reset(self, session_id: str, user_id: Any) -> JSONCompatibleDict:
        return await self._mutate(session_id, user_id, machine.timer_reset)

    async def extend_timer(
        self, session_id: str, user_id: Any, seconds: Any
    ) -> JSONCompatibleDict:
        return await self._mutate(
            session_id,
            user_id,
            lambda session, now: machine.extend_timer(
                session, seconds, now, max_multiple=self._max_extension_multiple
            ),
        )

    async def open_vote(
        self, session_id: str, user_id: Any, question: Any, options: Iterable[Any]
    ) -> JSONCompatibleDict:
        choices = list(options or [])
        return await self._mutate(
            session_id,
            user_id,
            lambda session, now: machine.open_vote(session, question, choices, now),
        )

    async def cast_vote(
        self, session_id: str, user_id: Any, selector: Any
    ) -> JSONCompatibleDict:
        voter = _clean_user_id(user_id)
        if voter is None:
            raise SessionValidationError("missing_userId", "userId is required")
        return await self._mutate(
            session_id,
            voter,
            lambda session, now: machine.cast_vote(session, voter, selector, now),
            host_only=False,
        )

    async def close_vote(self, session_id: str, user_id: Any) -> JSONCompatibleDict:
        return await self._mutate(
            session_id,
            user_id,
            lambda session, now: machine.close_vote(session, now) is not None,
        )

    # ------------------------------------------------------------------ #
    # Diagnostics
    # ------------------------------------------------------------------ #

    def diagnostics(self) -> JSONCompatibleDict:
        sessions = list(self._sessions.values())
        ended = sum(1 for session in sessions if session.ended)
        if self._repository is not None:
            persistence = self._repository.health()
        else:
            persistence = {"ok": True, "enabled": False}
        return {
            "sessions": {
                "total": len(sessions),
                "active": len(sessions) - ended,
                "ended": ended,
            },
            "persistence": persistence,
            "hostAuth": {
                "configured": bool(
                    self._host_config.allow_all or self._host_config.host_ids
                ),
                **self._host_config.summary(),
            },
        }
