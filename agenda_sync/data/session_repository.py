from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..models.session_record import SessionRecord

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class SessionRepository:
    """Saves and loads session documents and tracks write health.

    Write failures never propagate: the in-memory session stays authoritative
    and the failure is only visible through :meth:`health`.
    """

    def __init__(self, session_factory: sessionmaker, failure_threshold: int = 3):
        self._session_factory = session_factory
        self._failure_threshold = failure_threshold
        self._lock = threading.Lock()
        self._last_save_success: Optional[int] = None
        self._last_save_failure: Optional[int] = None
        self._last_error: Optional[str] = None
        self._consecutive_failures = 0
        self._total_saves = 0
        self._total_failures = 0

    def save(self, session_id: str, payload: Dict[str, Any]) -> bool:
        db = self._session_factory()
        try:
            record = db.get(SessionRecord, session_id)
            if record is None:
                record = SessionRecord(session_id=session_id)
                db.add(record)
            record.status = payload.get("status") or "active"
            record.revision = int(payload.get("revision") or 0)
            record.updated_at_ms = int(payload.get("updatedAt") or 0)
            record.payload = payload
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            self._record_failure(exc)
            logger.error(
                "Failed to persist session: session_id=%s error=%s", session_id, exc
            )
            return False
        finally:
            db.close()
        self._record_success()
        return True

    def load_all(self) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            records = db.query(SessionRecord).order_by(SessionRecord.session_id).all()
            documents = []
            for record in records:
                if not isinstance(record.payload, dict) or "id" not in record.payload:
                    logger.warning(
                        "Skipping malformed session record: session_id=%s",
                        record.session_id,
                    )
                    continue
                documents.append(dict(record.payload))
        except SQLAlchemyError as exc:
            logger.error("Failed to load sessions from the database: %s", exc)
            return []
        finally:
            db.close()
        logger.info("Loaded sessions from the database: count=%s", len(documents))
        return documents

    def _record_success(self) -> None:
        with self._lock:
            self._last_save_success = _now_ms()
            self._consecutive_failures = 0
            self._total_saves += 1

    def _record_failure(self, exc: Exception) -> None:
        with self._lock:
            self._last_save_failure = _now_ms()
            self._last_error = str(exc)
            self._consecutive_failures += 1
            self._total_failures += 1

    @property
    def healthy(self) -> bool:
        return self._consecutive_failures <= self._failure_threshold

    def health(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "ok": self._consecutive_failures <= self._failure_threshold,
                "lastSaveSuccess": self._last_save_success,
                "lastSaveFailure": self._last_save_failure,
                "lastError": self._last_error,
                "consecutiveFailures": self._consecutive_failures,
                "totalSaves": self._total_saves,
                "totalFailures": self._total_failures,
                "failureThreshold": self._failure_threshold,
            }
