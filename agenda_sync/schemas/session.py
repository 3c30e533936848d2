from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def _strip_identifier(value: Any) -> Any:
    # Platform ids arrive as JSON numbers from some clients.
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(int(value))
    if isinstance(value, str):
        return value.strip()
    return value


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HostRequest(CamelModel):
    user_id: str = Field(..., min_length=1)

    @field_validator("user_id", mode="before")
    @classmethod
    def normalise_user_id(cls, value: Any) -> Any:
        return _strip_identifier(value)


class StartSessionRequest(HostRequest):
    username: Optional[str] = None
    session_id: Optional[str] = Field(None, max_length=64)

    @field_validator("session_id", mode="before")
    @classmethod
    def normalise_session_id(cls, value: Any) -> Any:
        value = _strip_identifier(value)
        return value or None


class JoinSessionRequest(HostRequest):
    username: Optional[str] = None


class SetupRequest(HostRequest):
    meeting_name: Optional[str] = Field(None, max_length=200)


class StartMeetingRequest(HostRequest):
    start_timer: bool = False


class AgendaCreateRequest(HostRequest):
    title: str = Field(..., min_length=1, max_length=200)
    duration_sec: int = Field(0, ge=0)
    notes: Optional[str] = Field(None, max_length=10000)
    type: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=2000)
    link: Optional[str] = Field(None, max_length=2000)
    category: Optional[str] = Field(None, max_length=100)

    @field_validator("title")
    @classmethod
    def trim_title(cls, value: str) -> str:
        trimmed = value.strip()
        if not trimmed:
            raise ValueError("title is required")
        return trimmed


class AgendaUpdateRequest(HostRequest):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    duration_sec: Optional[int] = Field(None, ge=0)
    notes: Optional[str] = Field(None, max_length=10000)
    type: Optional[str] = Field(None, max_length=50)
    description: Optional[str] = Field(None, max_length=2000)
    link: Optional[str] = Field(None, max_length=2000)
    category: Optional[str] = Field(None, max_length=100)
    on_ballot: Optional[bool] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"user_id"})


class ReorderRequest(HostRequest):
    ordered_ids: List[str]


class TimerExtendRequest(HostRequest):
    seconds: int


class VoteOptionIn(BaseModel):
    id: Optional[str] = None
    label: str = Field(..., min_length=1)


class VoteOpenRequest(HostRequest):
    question: str = Field(..., min_length=1, max_length=500)
    options: List[Union[str, VoteOptionIn]]

    def option_payloads(self) -> List[Any]:
        return [
            option.model_dump() if isinstance(option, VoteOptionIn) else option
            for option in self.options
        ]


class VoteCastRequest(HostRequest):
    option_id: Optional[str] = None
    option_index: Optional[int] = None

    @property
    def selector(self) -> Any:
        return self.option_id if self.option_id is not None else self.option_index


class TokenRequest(CamelModel):
    code: str = Field(..., min_length=1)
