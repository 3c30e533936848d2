from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from agenda_sync.schemas.session import (
    AgendaCreateRequest,
    AgendaUpdateRequest,
    HostRequest,
    JoinSessionRequest,
    ReorderRequest,
    SetupRequest,
    StartMeetingRequest,
    StartSessionRequest,
    TimerExtendRequest,
    VoteCastRequest,
    VoteOpenRequest,
)
from agenda_sync.services.errors import SessionValidationError
from agenda_sync.services.session_store import SessionStore

router = APIRouter(prefix="/session", tags=["sessions"])


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


@router.post("/start")
async def start_session(
    payload: StartSessionRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.create_session(
        payload.user_id, payload.username, session_id=payload.session_id
    )


@router.post("/{session_id}/join")
async def join_session(
    session_id: str,
    payload: JoinSessionRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.join_session(session_id, payload.user_id, payload.username)


@router.get("/{session_id}/state")
async def get_state(
    session_id: str,
    since_revision: Optional[int] = Query(None, alias="sinceRevision"),
    user_id: Optional[str] = Query(None, alias="userId"),
    wait_ms: int = Query(0, alias="waitMs", ge=0),
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    """
    Poll the session. Returns ``{unchanged: true}`` when the caller already has
    the latest revision; with ``waitMs`` the call waits for the next change.
    """
    return await store.poll_state(
        session_id, since_revision=since_revision, user_id=user_id, wait_ms=wait_ms
    )


@router.post("/{session_id}/setup")
async def update_setup(
    session_id: str,
    payload: SetupRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.update_setup(session_id, payload.user_id, payload.meeting_name)


@router.post("/{session_id}/start-meeting")
async def start_meeting(
    session_id: str,
    payload: StartMeetingRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.start_meeting(
        session_id, payload.user_id, start_timer=payload.start_timer
    )


# ---------------------------------------------------------------------------
# Agenda


@router.post("/{session_id}/agenda")
async def add_agenda_item(
    session_id: str,
    payload: AgendaCreateRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.add_agenda_item(
        session_id,
        payload.user_id,
        payload.title,
        payload.duration_sec,
        notes=payload.notes,
        type=payload.type,
        description=payload.description,
        link=payload.link,
        category=payload.category,
    )


# Static agenda paths are declared before the {agenda_id} routes so they match first.
@router.put("/{session_id}/agenda/reorder")
async def reorder_agenda(
    session_id: str,
    payload: ReorderRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.reorder_agenda(session_id, payload.user_id, payload.ordered_ids)


@router.post("/{session_id}/agenda/next")
async def next_agenda_item(
    session_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.next_agenda_item(session_id, payload.user_id)


@router.post("/{session_id}/agenda/prev")
async def previous_agenda_item(
    session_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.previous_agenda_item(session_id, payload.user_id)


@router.post("/{session_id}/agenda/complete")
async def complete_active_item(
    session_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.complete_active_item(session_id, payload.user_id)


@router.put("/{session_id}/agenda/{agenda_id}")
async def update_agenda_item(
    session_id: str,
    agenda_id: str,
    payload: AgendaUpdateRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.update_agenda_item(
        session_id, payload.user_id, agenda_id, payload.changes()
    )


@router.delete("/{session_id}/agenda/{agenda_id}")
async def delete_agenda_item(
    session_id: str,
    agenda_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.delete_agenda_item(session_id, payload.user_id, agenda_id)


@router.post("/{session_id}/agenda/{agenda_id}/active")
async def set_active_item(
    session_id: str,
    agenda_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.set_active_item(session_id, payload.user_id, agenda_id)


@router.post("/{session_id}/agenda/{agenda_id}/ballot")
async def toggle_ballot(
    session_id: str,
    agenda_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.toggle_ballot(session_id, payload.user_id, agenda_id)


# ---------------------------------------------------------------------------
# Timer


@router.post("/{session_id}/timer/start")
async def start_timer(
    session_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.timer_start(session_id, payload.user_id)


@router.post("/{session_id}/timer/pause")
async def pause_timer(
    session_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.timer_pause(session_id, payload.user_id)


@router.post("/{session_id}/timer/resume")
async def resume_timer(
    session_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.timer_resume(session_id, payload.user_id)


@router.post("/{session_id}/timer/reset")
async def reset_timer(
    session_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.timer_reset(session_id, payload.user_id)


@router.post("/{session_id}/timer/extend")
async def extend_timer(
    session_id: str,
    payload: TimerExtendRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.extend_timer(session_id, payload.user_id, payload.seconds)


# ---------------------------------------------------------------------------
# Votes


@router.post("/{session_id}/vote/open")
async def open_vote(
    session_id: str,
    payload: VoteOpenRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.open_vote(
        session_id, payload.user_id, payload.question, payload.option_payloads()
    )


@router.post("/{session_id}/vote/cast")
async def cast_vote(
    session_id: str,
    payload: VoteCastRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    if payload.selector is None:
        raise SessionValidationError("missing_optionId", "optionId or optionIndex is required")
    return await store.cast_vote(session_id, payload.user_id, payload.selector)


@router.post("/{session_id}/vote/close")
async def close_vote(
    session_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.close_vote(session_id, payload.user_id)


@router.post("/{session_id}/end")
async def end_session(
    session_id: str,
    payload: HostRequest,
    store: SessionStore = Depends(get_session_store),
) -> Dict[str, Any]:
    return await store.end_session(session_id, payload.user_id)
