import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from agenda_sync.config.loader import get_database_url, load_config

_DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 30000
_DEFAULT_SQLITE_JOURNAL_MODE = "WAL"
_DEFAULT_SQLITE_SYNCHRONOUS = "NORMAL"
_DEFAULT_SQLITE_WRITE_RETRIES = 5
_DEFAULT_SQLITE_RETRY_BACKOFF_MS = 200

logger = logging.getLogger("database")

Base = declarative_base()

_SQLITE_WRITE_LOCK = threading.RLock()


def _get_sqlite_settings() -> dict:
    config = load_config()
    sqlite_config = config.get("sqlite") or {}

    def _coerce_positive_int(value, fallback):
        try:
            candidate = int(value)
            return candidate if candidate > 0 else fallback
        except Exception:  # noqa: BLE001
            return fallback

    journal_mode = sqlite_config.get("journal_mode") or _DEFAULT_SQLITE_JOURNAL_MODE
    synchronous = sqlite_config.get("synchronous") or _DEFAULT_SQLITE_SYNCHRONOUS
    return {
        "journal_mode": str(journal_mode),
        "synchronous": str(synchronous),
        "busy_timeout_ms": _coerce_positive_int(
            sqlite_config.get("busy_timeout_ms"), _DEFAULT_SQLITE_BUSY_TIMEOUT_MS
        ),
        "write_retries": _coerce_positive_int(
            sqlite_config.get("write_retries"), _DEFAULT_SQLITE_WRITE_RETRIES
        ),
        "retry_backoff_ms": _coerce_positive_int(
            sqlite_config.get("retry_backoff_ms"), _DEFAULT_SQLITE_RETRY_BACKOFF_MS
        ),
    }


def _ensure_sqlite_directory(database_url: str) -> None:
    if not database_url.startswith("sqlite"):
        return
    db_url = make_url(database_url)
    if not db_url.database or db_url.database == ":memory:":
        return
    db_path = Path(db_url.database)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _is_sqlite_locked_error(exc: OperationalError) -> bool:
    message = str(exc).lower()
    return "database is locked" in message or "database table is locked" in message


class QueuedSession(Session):
    """Session that serializes SQLite writes and retries commits on lock contention."""

    def __init__(
        self,
        *args,
        write_retries: int = _DEFAULT_SQLITE_WRITE_RETRIES,
        retry_backoff_ms: int = _DEFAULT_SQLITE_RETRY_BACKOFF_MS,
        **kwargs,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._write_retries = max(1, write_retries)
        self._retry_backoff = max(1, retry_backoff_ms) / 1000

    def commit(self) -> None:
        with _SQLITE_WRITE_LOCK:
            for attempt in range(1, self._write_retries + 1):
                try:
                    return super().commit()
                except OperationalError as exc:
                    if not _is_sqlite_locked_error(exc):
                        raise
                    super().rollback()
                    if attempt >= self._write_retries:
                        raise
                    logger.warning(
                        "SQLite locked on commit; retry %s/%s", attempt, self._write_retries
                    )
                    time.sleep(self._retry_backoff * attempt)

    def flush(self, objects=None) -> None:
        with _SQLITE_WRITE_LOCK:
            return super().flush(objects)


def _sqlite_pragma_listener(settings: dict):
    def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
        if not isinstance(dbapi_connection, sqlite3.Connection):
            return
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA journal_mode={settings['journal_mode']}")
        cursor.execute(f"PRAGMA synchronous={settings['synchronous']}")
        cursor.execute(f"PRAGMA busy_timeout={settings['busy_timeout_ms']}")
        cursor.close()

    return _set_sqlite_pragma


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    url = database_url or get_database_url()
    _ensure_sqlite_directory(url)
    connect_args = {}
    settings = None
    if url.startswith("sqlite"):
        settings = _get_sqlite_settings()
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = max(1, settings["busy_timeout_ms"] / 1000)

    engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    if settings is not None:
        event.listen(engine, "connect", _sqlite_pragma_listener(settings))
    logger.info("Database engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    if str(engine.url).startswith("sqlite"):
        settings = _get_sqlite_settings()
        return sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=engine,
            class_=QueuedSession,
            write_retries=settings["write_retries"],
            retry_backoff_ms=settings["retry_backoff_ms"],
        )
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create tables for every registered model."""
    from agenda_sync import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
