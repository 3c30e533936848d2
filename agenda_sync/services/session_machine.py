"""Meeting session entity model and its transition functions.

Every transition takes ``now_ms`` explicitly and never reads the clock, so the
same inputs always produce the same session. Transitions return ``True`` when
they changed state and ``False`` for no-ops; callers bump the revision only on
``True``. Commands the current state cannot accept raise ``SessionConflict``.

Timer representation: exactly one of running (``ends_at_ms`` set), paused
(``paused_remaining_sec`` set) or stopped (neither, ``duration_sec`` shown)
holds. Remaining seconds are always derived with :func:`remaining_seconds`.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from agenda_sync.services.errors import (
    SessionConflict,
    SessionNotFound,
    SessionValidationError,
)
from agenda_sync.services.host_policy import (
    HostAllowListConfig,
    HostPolicy,
    SharedSecret,
    policy_from_dict,
)
from agenda_sync.utils.identifiers import new_agenda_id

JSONCompatibleDict = Dict[str, Any]

SESSION_ACTIVE = "active"
SESSION_ENDED = "ended"

AGENDA_PENDING = "pending"
AGENDA_ACTIVE = "active"
AGENDA_COMPLETED = "completed"

EDITABLE_AGENDA_FIELDS = (
    "title",
    "duration_sec",
    "notes",
    "type",
    "description",
    "link",
    "category",
    "on_ballot",
)


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class AgendaItem:
    id: str
    title: str
    duration_sec: int = 0
    notes: str = ""
    type: Optional[str] = None
    description: Optional[str] = None
    link: Optional[str] = None
    category: Optional[str] = None
    on_ballot: bool = False
    status: str = AGENDA_PENDING
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    time_spent: int = 0
    activated_at: Optional[int] = None

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "id": self.id,
            "title": self.title,
            "durationSec": self.duration_sec,
            "notes": self.notes,
            "type": self.type,
            "description": self.description,
            "link": self.link,
            "category": self.category,
            "onBallot": self.on_ballot,
            "status": self.status,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "timeSpent": self.time_spent,
            "activatedAt": self.activated_at,
        }

    @classmethod
    def from_payload(cls, data: JSONCompatibleDict) -> "AgendaItem":
        return cls(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            duration_sec=int(data.get("durationSec") or 0),
            notes=str(data.get("notes") or ""),
            type=data.get("type"),
            description=data.get("description"),
            link=data.get("link"),
            category=data.get("category"),
            on_ballot=bool(data.get("onBallot", False)),
            status=data.get("status") or AGENDA_PENDING,
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            time_spent=int(data.get("timeSpent") or 0),
            activated_at=data.get("activatedAt"),
        )


@dataclass
class TimerState:
    running: bool = False
    ends_at_ms: Optional[int] = None
    paused_remaining_sec: Optional[int] = None
    duration_sec: int = 0
    updated_at_ms: Optional[int] = None

    @property
    def paused(self) -> bool:
        return not self.running and self.paused_remaining_sec is not None

    @property
    def stopped(self) -> bool:
        return not self.running and self.paused_remaining_sec is None

    def stop(self, duration_sec: int, now: int) -> None:
        self.running = False
        self.ends_at_ms = None
        self.paused_remaining_sec = None
        self.duration_sec = max(0, int(duration_sec))
        self.updated_at_ms = now

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "running": self.running,
            "endsAtMs": self.ends_at_ms,
            "pausedRemainingSec": self.paused_remaining_sec,
            "durationSec": self.duration_sec,
            "updatedAtMs": self.updated_at_ms,
        }

    @classmethod
    def from_payload(cls, data: JSONCompatibleDict) -> "TimerState":
        return cls(
            running=bool(data.get("running", False)),
            ends_at_ms=data.get("endsAtMs"),
            paused_remaining_sec=data.get("pausedRemainingSec"),
            duration_sec=int(data.get("durationSec") or 0),
            updated_at_ms=data.get("updatedAtMs"),
        )


@dataclass(frozen=True)
class VoteOption:
    id: str
    label: str

    def to_payload(self) -> JSONCompatibleDict:
        return {"id": self.id, "label": self.label}


@dataclass(frozen=True)
class VoteResult:
    question: str
    options: Tuple[VoteOption, ...]
    tally: Tuple[Tuple[str, int], ...]
    total_votes: int
    ts: int
    linked_agenda_id: Optional[str] = None

    def count_for(self, option_id: str) -> int:
        return dict(self.tally).get(option_id, 0)

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "question": self.question,
            "options": [option.to_payload() for option in self.options],
            "tally": dict(self.tally),
            "totalVotes": self.total_votes,
            "ts": self.ts,
            "linkedAgendaId": self.linked_agenda_id,
        }

    @classmethod
    def from_payload(cls, data: JSONCompatibleDict) -> "VoteResult":
        options = tuple(
            VoteOption(id=str(opt["id"]), label=str(opt["label"]))
            for opt in data.get("options") or []
        )
        raw_tally = data.get("tally") or {}
        return cls(
            question=str(data.get("question") or ""),
            options=options,
            tally=tuple(
                (option.id, int(raw_tally.get(option.id, 0))) for option in options
            ),
            total_votes=int(data.get("totalVotes") or 0),
            ts=int(data.get("ts") or 0),
            linked_agenda_id=data.get("linkedAgendaId"),
        )


@dataclass
class VoteState:
    open: bool = False
    question: str = ""
    options: List[VoteOption] = field(default_factory=list)
    votes_by_user_id: Dict[str, str] = field(default_factory=dict)
    closed_results: List[VoteResult] = field(default_factory=list)

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "open": self.open,
            "question": self.question,
            "options": [option.to_payload() for option in self.options],
            "votesByUserId": dict(self.votes_by_user_id),
            "closedResults": [result.to_payload() for result in self.closed_results],
        }

    @classmethod
    def from_payload(cls, data: JSONCompatibleDict) -> "VoteState":
        return cls(
            open=bool(data.get("open", False)),
            question=str(data.get("question") or ""),
            options=[
                VoteOption(id=str(opt["id"]), label=str(opt["label"]))
                for opt in data.get("options") or []
            ],
            votes_by_user_id={
                str(voter): str(option_id)
                for voter, option_id in (data.get("votesByUserId") or {}).items()
            },
            closed_results=[
                VoteResult.from_payload(entry)
                for entry in data.get("closedResults") or []
            ],
        )


@dataclass
class Attendee:
    user_id: str
    display_name: str = ""
    joined_at: Optional[int] = None
    last_seen_at: Optional[int] = None
    left_at: Optional[int] = None

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "joinedAt": self.joined_at,
            "lastSeenAt": self.last_seen_at,
            "leftAt": self.left_at,
        }

    @classmethod
    def from_payload(cls, data: JSONCompatibleDict) -> "Attendee":
        return cls(
            user_id=str(data["userId"]),
            display_name=str(data.get("displayName") or ""),
            joined_at=data.get("joinedAt"),
            last_seen_at=data.get("lastSeenAt"),
            left_at=data.get("leftAt"),
        )


@dataclass
class MeetingTimer:
    running: bool = False
    started_at_ms: Optional[int] = None
    ended_at_ms: Optional[int] = None

    def to_payload(self) -> JSONCompatibleDict:
        return {
            "running": self.running,
            "startedAtMs": self.started_at_ms,
            "endedAtMs": self.ended_at_ms,
        }

    @classmethod
    def from_payload(cls, data: JSONCompatibleDict) -> "MeetingTimer":
        return cls(
            running=bool(data.get("running", False)),
            started_at_ms=data.get("startedAtMs"),
            ended_at_ms=data.get("endedAtMs"),
        )


@dataclass
class Session:
    id: str
    host_policy: HostPolicy
    host_user_id: Optional[str] = None
    host_key_fallback: Optional[str] = None
    status: str = SESSION_ACTIVE
    revision: int = 0
    created_at: int = 0
    updated_at: int = 0
    meeting_name: str = ""
    agenda: List[AgendaItem] = field(default_factory=list)
    current_agenda_item_id: Optional[str] = None
    timer: TimerState = field(default_factory=TimerState)
    vote: VoteState = field(default_factory=VoteState)
    attendance: Dict[str, Attendee] = field(default_factory=dict)
    meeting_timer: MeetingTimer = field(default_factory=MeetingTimer)
    minutes: str = ""

    @property
    def ended(self) -> bool:
        return self.status == SESSION_ENDED

    @property
    def host_key(self) -> Optional[str]:
        if isinstance(self.host_policy, SharedSecret):
            return self.host_policy.key
        return None

    def bump(self, now: int) -> None:
        self.revision += 1
        self.updated_at = now

    def find_item(self, agenda_id: Optional[str]) -> Optional[AgendaItem]:
        if agenda_id is None:
            return None
        for item in self.agenda:
            if item.id == agenda_id:
                return item
        return None

    def active_item(self) -> Optional[AgendaItem]:
        for item in self.agenda:
            if item.status == AGENDA_ACTIVE:
                return item
        return None

    def current_item(self) -> Optional[AgendaItem]:
        return self.active_item() or self.find_item(self.current_agenda_item_id)


def new_session(
    session_id: str,
    host_policy: HostPolicy,
    now: int,
    *,
    host_user_id: Optional[str] = None,
) -> Session:
    return Session(
        id=session_id,
        host_policy=host_policy,
        host_user_id=host_user_id,
        created_at=now,
        updated_at=now,
        timer=TimerState(updated_at_ms=now),
    )


# ---------------------------------------------------------------------------
# Derived values


def remaining_seconds(timer: TimerState, now: int) -> int:
    """Seconds left on the countdown at ``now``, rounded up."""
    if timer.running and timer.ends_at_ms is not None:
        return math.ceil(max(0, timer.ends_at_ms - now) / 1000)
    if timer.paused_remaining_sec is not None:
        return timer.paused_remaining_sec
    return timer.duration_sec


def elapsed_seconds(meeting_timer: MeetingTimer, now: int) -> int:
    if meeting_timer.started_at_ms is None:
        return 0
    end = now if meeting_timer.running else (meeting_timer.ended_at_ms or now)
    return max(0, (end - meeting_timer.started_at_ms) // 1000)


def winning_options(result: VoteResult) -> List[VoteOption]:
    """Options holding the highest tally.

    A tie returns every tied option in ballot order; a vote nobody answered
    has no winner.
    """
    if not result.options:
        return []
    top = max(result.count_for(option.id) for option in result.options)
    if top <= 0:
        return []
    return [option for option in result.options if result.count_for(option.id) == top]


# ---------------------------------------------------------------------------
# Agenda


def _coerce_duration(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise SessionValidationError("invalid_duration", "Duration must be a number")
    try:
        seconds = int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        raise SessionValidationError("invalid_duration", "Duration must be a number")
    if seconds < 0:
        raise SessionValidationError("invalid_duration", "Duration must not be negative")
    return seconds


def _clean_title(value: Any) -> str:
    title = str(value).strip() if value is not None else ""
    if not title:
        raise SessionValidationError("missing_title", "Agenda item title is required")
    return title


def _require_item(session: Session, agenda_id: str) -> AgendaItem:
    item = session.find_item(agenda_id)
    if item is None:
        raise SessionNotFound("agenda_not_found", "Agenda item not found")
    return item


def _complete_item(item: AgendaItem, now: int) -> None:
    item.status = AGENDA_COMPLETED
    item.completed_at = now
    if item.activated_at is not None:
        item.time_spent += max(0, now - item.activated_at)
    item.activated_at = None


def add_agenda_item(
    session: Session,
    title: Any,
    now: int,
    *,
    duration_sec: Any = 0,
    notes: Optional[str] = None,
    **fields: Any,
) -> AgendaItem:
    item = AgendaItem(
        id=new_agenda_id(),
        title=_clean_title(title),
        duration_sec=_coerce_duration(duration_sec),
        notes=str(notes or ""),
        type=fields.get("type"),
        description=fields.get("description"),
        link=fields.get("link"),
        category=fields.get("category"),
        on_ballot=bool(fields.get("on_ballot", False)),
    )
    session.agenda.append(item)
    if session.current_agenda_item_id is None:
        session.current_agenda_item_id = item.id
        if session.timer.stopped:
            session.timer.stop(item.duration_sec, now)
    return item


def update_agenda_item(
    session: Session,
    agenda_id: str,
    changes: Dict[str, Any],
    now: int,
) -> bool:
    item = _require_item(session, agenda_id)
    changed = False
    for name in EDITABLE_AGENDA_FIELDS:
        if name not in changes:
            continue
        value = changes[name]
        if name == "title":
            value = _clean_title(value)
        elif name == "duration_sec":
            value = _coerce_duration(value)
        elif name == "notes":
            value = str(value or "")
        elif name == "on_ballot":
            value = bool(value)
        if getattr(item, name) != value:
            setattr(item, name, value)
            changed = True

    if (
        changed
        and "duration_sec" in changes
        and session.current_item() is item
        and session.timer.stopped
    ):
        session.timer.stop(item.duration_sec, now)
    return changed


def delete_agenda_item(session: Session, agenda_id: str, now: int) -> bool:
    item = _require_item(session, agenda_id)
    if item.status == AGENDA_ACTIVE:
        raise SessionConflict(
            "cannot_delete_active", "The active agenda item cannot be deleted"
        )
    session.agenda.remove(item)
    if session.current_agenda_item_id == item.id:
        fallback = session.agenda[0] if session.agenda else None
        session.current_agenda_item_id = fallback.id if fallback else None
        if not session.timer.running:
            session.timer.stop(fallback.duration_sec if fallback else 0, now)
    return True


def reorder_agenda(session: Session, ordered_ids: Sequence[Any], now: int) -> bool:
    requested = [str(agenda_id) for agenda_id in ordered_ids]
    existing = [item.id for item in session.agenda]
    if len(set(requested)) != len(requested) or sorted(requested) != sorted(existing):
        raise SessionValidationError(
            "invalid_order", "orderedIds must list every agenda item exactly once"
        )
    if requested == existing:
        return False
    by_id = {item.id: item for item in session.agenda}
    session.agenda = [by_id[agenda_id] for agenda_id in requested]
    return True


def set_active_item(session: Session, agenda_id: Optional[str], now: int) -> bool:
    """Make ``agenda_id`` the active item; ``False`` when it does not exist.

    The previously active item is completed and its time accumulated. A
    running countdown is left untouched; otherwise the timer is reset to the
    new item's duration.
    """
    item = session.find_item(agenda_id)
    if item is None:
        return False
    previous = session.active_item()
    if previous is not None and previous is not item:
        _complete_item(previous, now)
    if item.status != AGENDA_ACTIVE:
        item.status = AGENDA_ACTIVE
        item.completed_at = None
        item.activated_at = now
    if item.started_at is None:
        item.started_at = now
    session.current_agenda_item_id = item.id
    if not session.timer.running:
        session.timer.stop(item.duration_sec, now)
    return True


def _current_index(session: Session) -> int:
    current = session.current_item()
    if current is None:
        return -1
    return session.agenda.index(current)


def next_agenda_item(session: Session, now: int) -> bool:
    if not session.agenda:
        return False
    index = (_current_index(session) + 1) % len(session.agenda)
    return set_active_item(session, session.agenda[index].id, now)


def previous_agenda_item(session: Session, now: int) -> bool:
    if not session.agenda:
        return False
    index = _current_index(session)
    index = len(session.agenda) - 1 if index <= 0 else index - 1
    return set_active_item(session, session.agenda[index].id, now)


def complete_active_item(session: Session, now: int) -> bool:
    active = session.active_item()
    if active is None:
        raise SessionConflict("no_active_item", "No agenda item is active")
    index = session.agenda.index(active)
    _complete_item(active, now)
    if index + 1 < len(session.agenda):
        set_active_item(session, session.agenda[index + 1].id, now)
    return True


def toggle_ballot(session: Session, agenda_id: str, now: int) -> bool:
    item = _require_item(session, agenda_id)
    item.on_ballot = not item.on_ballot
    return True


# ---------------------------------------------------------------------------
# Item countdown


def timer_start(session: Session, now: int) -> bool:
    timer = session.timer
    if timer.running:
        return False
    if timer.paused:
        return timer_resume(session, now)
    timer.running = True
    timer.ends_at_ms = now + timer.duration_sec * 1000
    timer.paused_remaining_sec = None
    timer.updated_at_ms = now
    return True


def timer_pause(session: Session, now: int) -> bool:
    timer = session.timer
    if not timer.running:
        return False
    timer.paused_remaining_sec = remaining_seconds(timer, now)
    timer.running = False
    timer.ends_at_ms = None
    timer.updated_at_ms = now
    return True


def timer_resume(session: Session, now: int) -> bool:
    timer = session.timer
    if not timer.paused:
        return False
    timer.running = True
    timer.ends_at_ms = now + timer.paused_remaining_sec * 1000
    timer.paused_remaining_sec = None
    timer.updated_at_ms = now
    return True


def timer_reset(session: Session, now: int) -> bool:
    item = session.current_item()
    session.timer.stop(item.duration_sec if item else 0, now)
    return True


def extend_timer(
    session: Session,
    delta_seconds: Any,
    now: int,
    *,
    max_multiple: Optional[float] = None,
) -> bool:
    """Add ``delta_seconds`` (may be negative) to the countdown.

    The result may not drop below zero, and may not exceed ``max_multiple``
    times the current item's configured duration.
    """
    if isinstance(delta_seconds, bool):
        raise SessionValidationError("invalid_seconds", "seconds must be a number")
    try:
        delta = int(delta_seconds)
    except (TypeError, ValueError, OverflowError):
        raise SessionValidationError("invalid_seconds", "seconds must be a number")
    if delta == 0:
        return False

    timer = session.timer
    remaining = remaining_seconds(timer, now)
    if remaining + delta < 0:
        raise SessionConflict(
            "timer_negative", "Extension would leave negative time on the timer"
        )
    item = session.current_item()
    base = item.duration_sec if item else 0
    if (
        delta > 0
        and max_multiple
        and base > 0
        and remaining + delta > base * max_multiple
    ):
        raise SessionConflict(
            "timer_extension_cap",
            f"Timer cannot exceed {max_multiple:g}x the item's duration",
        )

    if timer.running and timer.ends_at_ms is not None:
        timer.ends_at_ms += delta * 1000
    elif timer.paused_remaining_sec is not None:
        timer.paused_remaining_sec += delta
    else:
        timer.duration_sec += delta
    timer.updated_at_ms = now
    return True


# ---------------------------------------------------------------------------
# Votes


def _normalize_options(options: Iterable[Any]) -> List[VoteOption]:
    normalized: List[VoteOption] = []
    for index, option in enumerate(options or []):
        if isinstance(option, dict):
            label = str(option.get("label") or "").strip()
            option_id = str(option.get("id") or "").strip() or f"opt{index + 1}"
        else:
            label = str(option).strip() if option is not None else ""
            option_id = f"opt{index + 1}"
        if not label:
            raise SessionValidationError(
                "invalid_options", "Vote options must not be empty"
            )
        normalized.append(VoteOption(id=option_id, label=label))
    if len(normalized) < 2:
        raise SessionValidationError(
            "invalid_options", "A vote needs at least two options"
        )
    if len({option.id for option in normalized}) != len(normalized):
        raise SessionValidationError("invalid_options", "Vote option ids must be unique")
    return normalized


def open_vote(session: Session, question: Any, options: Iterable[Any], now: int) -> bool:
    text = str(question).strip() if question is not None else ""
    if not text:
        raise SessionValidationError("missing_question", "A vote needs a question")
    normalized = _normalize_options(options)
    session.vote.open = True
    session.vote.question = text
    session.vote.options = normalized
    session.vote.votes_by_user_id = {}
    return True


def _resolve_option(vote: VoteState, selector: Any) -> Optional[str]:
    if isinstance(selector, bool) or selector is None:
        return None
    if isinstance(selector, int):
        if 0 <= selector < len(vote.options):
            return vote.options[selector].id
        return None
    candidate = str(selector)
    for option in vote.options:
        if option.id == candidate:
            return option.id
    return None


def cast_vote(session: Session, voter_id: str, selector: Any, now: int) -> bool:
    vote = session.vote
    if not vote.open:
        raise SessionConflict("vote_not_open", "No vote is open")
    option_id = _resolve_option(vote, selector)
    if option_id is None:
        raise SessionConflict("invalid_option", "Selected option is not on the ballot")
    voter = str(voter_id)
    previous = vote.votes_by_user_id.get(voter)
    vote.votes_by_user_id[voter] = option_id
    return previous != option_id


def close_vote(session: Session, now: int) -> Optional[VoteResult]:
    vote = session.vote
    if not vote.open:
        return None
    counts = {option.id: 0 for option in vote.options}
    for option_id in vote.votes_by_user_id.values():
        if option_id in counts:
            counts[option_id] += 1
    result = VoteResult(
        question=vote.question,
        options=tuple(vote.options),
        tally=tuple(counts.items()),
        total_votes=len(vote.votes_by_user_id),
        ts=now,
        linked_agenda_id=session.current_agenda_item_id,
    )
    vote.closed_results.append(result)
    vote.open = False
    vote.question = ""
    vote.options = []
    vote.votes_by_user_id = {}
    return result


# ---------------------------------------------------------------------------
# Attendance and meeting lifecycle


def record_attendance(
    session: Session,
    participant_id: str,
    display_name: Optional[str],
    now: int,
) -> bool:
    """Create or refresh an attendance entry; ``True`` when visible state changed."""
    key = str(participant_id)
    name = (display_name or "").strip()
    attendee = session.attendance.get(key)
    if attendee is None:
        session.attendance[key] = Attendee(
            user_id=key,
            display_name=name,
            joined_at=now,
            last_seen_at=now,
        )
        return True
    changed = False
    attendee.last_seen_at = now
    if attendee.left_at is not None:
        attendee.left_at = None
        changed = True
    if name and name != attendee.display_name:
        attendee.display_name = name
        changed = True
    return changed


def mark_seen(session: Session, participant_id: str, now: int) -> None:
    attendee = session.attendance.get(str(participant_id))
    if attendee is not None:
        attendee.last_seen_at = now


def mark_left(session: Session, participant_id: str, now: int) -> bool:
    attendee = session.attendance.get(str(participant_id))
    if attendee is None or attendee.left_at is not None:
        return False
    attendee.left_at = now
    return True


def update_setup(session: Session, meeting_name: Optional[str], now: int) -> bool:
    name = (meeting_name or "").strip()
    if name == session.meeting_name:
        return False
    session.meeting_name = name
    return True


def start_meeting(session: Session, now: int, *, start_timer: bool = False) -> bool:
    changed = False
    if not session.meeting_timer.running:
        session.meeting_timer.running = True
        session.meeting_timer.started_at_ms = now
        session.meeting_timer.ended_at_ms = None
        changed = True
    if session.active_item() is None and session.current_agenda_item_id:
        changed = set_active_item(session, session.current_agenda_item_id, now) or changed
    if start_timer:
        changed = timer_start(session, now) or changed
    return changed


def end_session(
    session: Session,
    now: int,
    render_minutes: Callable[[JSONCompatibleDict, int], str],
) -> str:
    """Freeze the meeting and store its minutes. Ending twice is a no-op."""
    if session.ended:
        return session.minutes
    active = session.active_item()
    if active is not None:
        _complete_item(active, now)
    close_vote(session, now)
    timer_pause(session, now)
    if session.meeting_timer.running:
        session.meeting_timer.running = False
        session.meeting_timer.ended_at_ms = now
    session.status = SESSION_ENDED
    session.minutes = render_minutes(snapshot(session, now), now)
    return session.minutes


# ---------------------------------------------------------------------------
# Serialization


def _base_payload(session: Session) -> JSONCompatibleDict:
    return {
        "id": session.id,
        "status": session.status,
        "revision": session.revision,
        "createdAt": session.created_at,
        "updatedAt": session.updated_at,
        "meetingName": session.meeting_name,
        "hostUserId": session.host_user_id,
        "hostMode": session.host_policy.mode,
        "agenda": [item.to_payload() for item in session.agenda],
        "currentAgendaItemId": session.current_agenda_item_id,
        "timer": session.timer.to_payload(),
        "vote": session.vote.to_payload(),
        "attendance": {
            key: attendee.to_payload() for key, attendee in session.attendance.items()
        },
        "meetingTimer": session.meeting_timer.to_payload(),
        "minutes": session.minutes,
    }


def snapshot(session: Session, now: int) -> JSONCompatibleDict:
    """Client-safe copy of the session with derived time fields resolved."""
    payload = _base_payload(session)
    active = session.active_item()
    payload["activeAgendaId"] = active.id if active else None
    payload["timer"]["remainingSec"] = remaining_seconds(session.timer, now)
    payload["meetingTimer"]["elapsedSec"] = elapsed_seconds(session.meeting_timer, now)
    return payload


def session_to_dict(session: Session) -> JSONCompatibleDict:
    """Durable form of the session, host secrets included."""
    payload = _base_payload(session)
    payload["hostPolicy"] = session.host_policy.to_dict()
    payload["hostKeyFallback"] = session.host_key_fallback
    return payload


def session_from_dict(
    data: JSONCompatibleDict, host_config: HostAllowListConfig
) -> Session:
    return Session(
        id=str(data["id"]),
        host_policy=policy_from_dict(data.get("hostPolicy"), host_config),
        host_user_id=data.get("hostUserId"),
        host_key_fallback=data.get("hostKeyFallback"),
        status=data.get("status") or SESSION_ACTIVE,
        revision=int(data.get("revision") or 0),
        created_at=int(data.get("createdAt") or 0),
        updated_at=int(data.get("updatedAt") or 0),
        meeting_name=str(data.get("meetingName") or ""),
        agenda=[AgendaItem.from_payload(item) for item in data.get("agenda") or []],
        current_agenda_item_id=data.get("currentAgendaItemId"),
        timer=TimerState.from_payload(data.get("timer") or {}),
        vote=VoteState.from_payload(data.get("vote") or {}),
        attendance={
            str(key): Attendee.from_payload(value)
            for key, value in (data.get("attendance") or {}).items()
        },
        meeting_timer=MeetingTimer.from_payload(data.get("meetingTimer") or {}),
        minutes=str(data.get("minutes") or ""),
    )
