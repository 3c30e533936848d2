# Import models so they register with SQLAlchemy's Base metadata
from .session_record import SessionRecord

__all__ = [
    "SessionRecord",
]
