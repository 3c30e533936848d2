"""Markdown meeting minutes rendered from a session snapshot."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from agenda_sync.services.session_machine import VoteResult, winning_options

PRIORITY_HIGH = "high"
PRIORITY_MEDIUM = "medium"

_PREFIXED_PATTERNS = (
    (re.compile(r"^TODO[:\-]\s+", re.IGNORECASE), PRIORITY_MEDIUM),
    (re.compile(r"^ACTION[:\-]\s+", re.IGNORECASE), PRIORITY_HIGH),
    (re.compile(r"^[-*]\s*\[\s*\]\s+"), PRIORITY_MEDIUM),
)
_ASSIGNEE_PATTERN = re.compile(r"@(\w+)\s+(.+)")
_URGENT_PATTERN = re.compile(r"^(HIGH|CRITICAL|URGENT)[:\-]\s+", re.IGNORECASE)


@dataclass
class ActionItem:
    text: str
    priority: str = PRIORITY_MEDIUM
    assignee: Optional[str] = None
    source: Optional[str] = None

    def render(self) -> str:
        prefix = f"@{self.assignee} " if self.assignee else ""
        return f"- [ ] {prefix}{self.text}"


def extract_action_items(text: Optional[str]) -> List[ActionItem]:
    """Pull follow-ups out of free-form notes.

    Recognised lines: ``TODO:``, ``ACTION:``, unchecked Markdown checkboxes,
    ``@name task`` and ``HIGH:``/``CRITICAL:``/``URGENT:`` prefixes.
    """
    if not text:
        return []
    items: List[ActionItem] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        matched = False
        for pattern, priority in _PREFIXED_PATTERNS:
            if pattern.match(line):
                body = pattern.sub("", line, count=1).strip()
                if body:
                    items.append(ActionItem(text=body, priority=priority))
                matched = True
                break
        if matched:
            continue
        assignee = _ASSIGNEE_PATTERN.search(line)
        if assignee:
            items.append(
                ActionItem(text=assignee.group(2).strip(), assignee=assignee.group(1))
            )
            continue
        if _URGENT_PATTERN.match(line):
            body = _URGENT_PATTERN.sub("", line, count=1).strip()
            if body:
                items.append(ActionItem(text=body, priority=PRIORITY_HIGH))
    return items


def format_duration(ms: int) -> str:
    seconds = max(0, int(ms)) // 1000
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def format_timestamp(ms: Optional[int]) -> str:
    if ms is None:
        return "-"
    moment = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return moment.strftime("%b %d, %Y %H:%M UTC")


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def _render_vote(result: VoteResult) -> List[str]:
    winners = {option.id for option in winning_options(result)}
    lines = [f'**Vote:** "{result.question}"']
    for option in result.options:
        count = result.count_for(option.id)
        share = round(count * 100 / result.total_votes) if result.total_votes else 0
        marker = "[winner] " if option.id in winners else ""
        lines.append(f"- {marker}{option.label}: {_plural(count, 'vote')} ({share}%)")
    lines.append(f"**Total votes:** {result.total_votes}")
    return lines


def _decision_line(index: int, result: VoteResult) -> str:
    winners = winning_options(result)
    if not winners:
        return f'{index}. "{result.question}": no decision (no votes cast)'
    labels = " / ".join(f"**{option.label}**" for option in winners)
    top = result.count_for(winners[0].id)
    share = round(top * 100 / result.total_votes) if result.total_votes else 0
    suffix = " (tie)" if len(winners) > 1 else ""
    return f'{index}. "{result.question}" -> {labels}{suffix} ({share}% support)'


def render_minutes(state: Dict[str, Any], now_ms: int) -> str:
    """Render a session snapshot as Markdown minutes."""
    agenda: List[Dict[str, Any]] = state.get("agenda") or []
    attendance: Dict[str, Dict[str, Any]] = state.get("attendance") or {}
    results = [
        VoteResult.from_payload(entry)
        for entry in (state.get("vote") or {}).get("closedResults") or []
    ]
    host_id = state.get("hostUserId")
    host_entry = attendance.get(host_id or "") or {}
    created_at = state.get("createdAt") or now_ms

    title = state.get("meetingName") or (agenda[0]["title"] if agenda else "Meeting")
    completed = sum(1 for item in agenda if item.get("status") == "completed")

    action_items: List[ActionItem] = []
    for item in agenda:
        for action in extract_action_items(item.get("notes")):
            action.source = item.get("title")
            action_items.append(action)

    lines = [
        f"# Meeting: {title}",
        f"**Date:** {format_timestamp(created_at)} | "
        f"**Duration:** {format_duration(now_ms - created_at)}",
        f"**Host:** {host_entry.get('displayName') or host_id or 'unknown'} | "
        f"**Participants:** {len(attendance)}",
        "",
        "## Summary",
        f"- Agenda items completed: {completed}/{len(agenda)}",
        f"- Votes taken: {len(results)}",
        f"- Action items identified: {len(action_items)}",
        f"- Attendance: {_plural(len(attendance), 'participant')}",
        "",
    ]

    if agenda:
        lines.extend(["---", "", "## Agenda Items", ""])
        for index, item in enumerate(agenda, start=1):
            time_spent = int(item.get("timeSpent") or 0)
            planned = int(item.get("durationSec") or 0)
            if time_spent > 0:
                timing = f" ({format_duration(time_spent)})"
            elif planned > 0:
                timing = f" ({planned}s planned)"
            else:
                timing = ""
            lines.append(f"### {index}. {item.get('title')}{timing}")
            lines.append(f"**Status:** {str(item.get('status') or '').capitalize()}")
            if item.get("notes"):
                lines.append(f"**Notes:** {item['notes']}")
            for result in results:
                if result.linked_agenda_id == item.get("id"):
                    lines.append("")
                    lines.extend(_render_vote(result))
            lines.append("")

    if results:
        lines.extend(["---", "", "## Decisions Made", ""])
        for index, result in enumerate(results, start=1):
            lines.append(_decision_line(index, result))
        lines.append("")

    lines.extend(["---", "", "## Action Items", ""])
    if action_items:
        for priority, heading in ((PRIORITY_HIGH, "High"), (PRIORITY_MEDIUM, "Medium")):
            bucket = [action for action in action_items if action.priority == priority]
            if not bucket:
                continue
            lines.append(f"### {heading} Priority")
            lines.extend(action.render() for action in bucket)
            lines.append("")
    else:
        lines.extend(["*No action items identified during the meeting.*", ""])

    lines.extend(["---", "", "## Attendance", ""])
    for key, entry in attendance.items():
        name = entry.get("displayName") or entry.get("userId") or key
        host_marker = " (Host)" if host_id and key == host_id else ""
        left = entry.get("leftAt")
        until = f" - left {format_timestamp(left)}" if left else " - present"
        lines.append(
            f"- {name}{host_marker} - joined {format_timestamp(entry.get('joinedAt'))}{until}"
        )

    lines.extend(["", "---", "", f"*Minutes generated: {format_timestamp(now_ms)}*"])
    return "\n".join(lines)
