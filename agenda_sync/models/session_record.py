from sqlalchemy import BigInteger, Column, DateTime, Integer, JSON, String
from sqlalchemy.sql import func

from ..database import Base


class SessionRecord(Base):
    """Durable copy of one meeting session, stored as its JSON document."""

    __tablename__ = "meeting_sessions"

    session_id = Column(String(64), primary_key=True, index=True)
    status = Column(String(16), nullable=False, default="active", index=True)
    revision = Column(Integer, nullable=False, default=0)
    payload = Column(JSON, nullable=False, default=dict)
    updated_at_ms = Column(BigInteger, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
