from __future__ import annotations

import enum
import logging
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, FrozenSet, Iterable, Optional, Union

if TYPE_CHECKING:
    from agenda_sync.services.session_machine import Session

logger = logging.getLogger(__name__)

SHARED_SECRET_MODE = "shared_secret"
ALLOW_LIST_MODE = "allow_list"


class HostAccess(str, enum.Enum):
    GRANTED = "granted"
    NOT_HOST = "not_host"
    REVOKED = "revoked"


@dataclass(frozen=True)
class HostAllowListConfig:
    """Global host allow-list: explicit platform user ids or everyone."""

    allow_all: bool = False
    host_ids: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def parse(cls, raw: Union[str, Iterable[Any], None]) -> "HostAllowListConfig":
        if raw is None:
            parts: list[str] = []
        elif isinstance(raw, str):
            parts = [part.strip() for part in raw.split(",")]
        else:
            parts = [str(part).strip() for part in raw]
        parts = [part for part in parts if part]
        return cls(
            allow_all="*" in parts,
            host_ids=frozenset(part for part in parts if part != "*"),
        )

    def permits(self, user_id: Optional[str]) -> bool:
        if not user_id:
            return False
        if self.allow_all:
            return True
        return str(user_id).strip() in self.host_ids

    def summary(self) -> Dict[str, Any]:
        return {"allowAll": self.allow_all, "hostIdsCount": len(self.host_ids)}


@dataclass(frozen=True)
class HostCredential:
    """What a caller presents to claim host rights."""

    client_id: Optional[str] = None
    user_id: Optional[str] = None
    host_key: Optional[str] = None

    @property
    def identity(self) -> Optional[str]:
        return self.client_id or self.user_id


def _keys_match(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return secrets.compare_digest(str(expected), str(provided))


@dataclass(frozen=True)
class SharedSecret:
    """Standalone mode: whoever holds the room's key is the host."""

    key: str
    mode: str = field(default=SHARED_SECRET_MODE, init=False)

    def check(self, session: "Session", credential: HostCredential) -> HostAccess:
        if _keys_match(self.key, credential.host_key):
            return HostAccess.GRANTED
        return HostAccess.NOT_HOST

    def try_latch(
        self,
        session: "Session",
        credential: HostCredential,
        *,
        allow_fallback: bool = False,
    ) -> bool:
        if session.host_user_id or not _keys_match(self.key, credential.host_key):
            return False
        session.host_user_id = credential.identity
        logger.info(
            "Host latched: session_id=%s host=%s mode=%s",
            session.id,
            session.host_user_id,
            self.mode,
        )
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {"mode": self.mode, "key": self.key}


@dataclass(frozen=True)
class AllowList:
    """Platform mode: the host must be in the global allow-list.

    The allow-list is consulted on every check, so removing an id from the
    configuration revokes a host that was recorded earlier.
    """

    config: HostAllowListConfig
    mode: str = field(default=ALLOW_LIST_MODE, init=False)

    def check(self, session: "Session", credential: HostCredential) -> HostAccess:
        if _keys_match(session.host_key_fallback, credential.host_key):
            return HostAccess.GRANTED
        if session.host_user_id and credential.user_id == session.host_user_id:
            if self.config.permits(credential.user_id):
                return HostAccess.GRANTED
            logger.warning(
                "Session host no longer globally authorized: session_id=%s host=%s",
                session.id,
                session.host_user_id,
            )
            return HostAccess.REVOKED
        return HostAccess.NOT_HOST

    def try_latch(
        self,
        session: "Session",
        credential: HostCredential,
        *,
        allow_fallback: bool = False,
    ) -> bool:
        if session.host_user_id:
            return False
        if credential.user_id and self.config.permits(credential.user_id):
            session.host_user_id = str(credential.user_id)
            logger.info(
                "Host latched: session_id=%s host=%s mode=%s",
                session.id,
                session.host_user_id,
                self.mode,
            )
            return True
        if allow_fallback and credential.host_key and not session.host_key_fallback:
            session.host_user_id = credential.identity
            session.host_key_fallback = credential.host_key
            logger.info(
                "Host latched via host key fallback: session_id=%s host=%s",
                session.id,
                session.host_user_id,
            )
            return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {"mode": self.mode}


HostPolicy = Union[SharedSecret, AllowList]


def policy_from_dict(
    payload: Optional[Dict[str, Any]], config: HostAllowListConfig
) -> HostPolicy:
    payload = payload or {}
    if payload.get("mode") == SHARED_SECRET_MODE and payload.get("key"):
        return SharedSecret(key=str(payload["key"]))
    return AllowList(config=config)
