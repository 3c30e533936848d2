"""
Data access layer for durable session documents.
"""

from .session_repository import SessionRepository

__all__ = ["SessionRepository"]
