from __future__ import annotations

from typing import Any, Dict, Optional


class SessionError(Exception):
    """Base error carrying a stable, machine-readable code."""

    status_code = 400

    def __init__(
        self,
        code: str,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code.replace("_", " ")
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class SessionValidationError(SessionError):
    status_code = 400


class SessionForbidden(SessionError):
    status_code = 403


class SessionNotFound(SessionError):
    status_code = 404

    def __init__(self, code: str = "not_found", message: Optional[str] = None) -> None:
        super().__init__(code, message or "Session not found")


class SessionConflict(SessionError):
    """Raised when a command is valid but the current state does not allow it."""

    status_code = 400
