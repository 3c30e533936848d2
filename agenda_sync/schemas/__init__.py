from .session import (
    AgendaCreateRequest,
    AgendaUpdateRequest,
    HostRequest,
    StartSessionRequest,
    TokenRequest,
    VoteCastRequest,
    VoteOpenRequest,
)

__all__ = [
    "AgendaCreateRequest",
    "AgendaUpdateRequest",
    "HostRequest",
    "StartSessionRequest",
    "TokenRequest",
    "VoteCastRequest",
    "VoteOpenRequest",
]
