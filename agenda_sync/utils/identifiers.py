import re
import secrets
import string
import uuid
from typing import Optional

ROOM_ID_LENGTH = 6
HOST_KEY_LENGTH = 16
AGENDA_ID_PREFIX = "AGD"
AGENDA_ID_TOKEN_BYTES = 5

_ROOM_ALPHABET = string.ascii_uppercase + string.digits
_HOST_KEY_ALPHABET = string.ascii_letters + string.digits
_SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def _random_token(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def new_session_id() -> str:
    return uuid.uuid4().hex


def new_room_id() -> str:
    """Short, shareable room code, e.g. ``K7Q2ZP``."""
    return _random_token(_ROOM_ALPHABET, ROOM_ID_LENGTH)


def new_host_key() -> str:
    return _random_token(_HOST_KEY_ALPHABET, HOST_KEY_LENGTH)


def new_agenda_id() -> str:
    return f"{AGENDA_ID_PREFIX}-{secrets.token_hex(AGENDA_ID_TOKEN_BYTES).upper()}"


def normalize_room_id(value: Optional[str]) -> str:
    return re.sub(r"[^A-Z0-9]", "", (value or "").upper())


def clean_session_id(value: Optional[str]) -> Optional[str]:
    """Return a caller-chosen session id when it is safe to use, else ``None``."""
    if value is None:
        return None
    candidate = str(value).strip()
    if not candidate or not _SESSION_ID_PATTERN.match(candidate):
        return None
    return candidate
