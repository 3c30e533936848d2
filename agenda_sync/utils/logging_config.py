import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Dict, Optional

from agenda_sync.config.loader import get_log_dir

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# logger name -> (handlers, level)
_LOGGERS = {
    "uvicorn": (["console", "app_file"], "INFO"),
    "uvicorn.error": (["console", "error_file"], "INFO"),
    "audit": (["console", "app_file"], "INFO"),
    "database": (["console", "app_file", "error_file"], "INFO"),
    "agenda_sync": (["console", "app_file", "error_file"], "DEBUG"),
}


def _prune_rotated(log_file: Path, keep: int) -> None:
    """Delete rotated copies of ``log_file`` beyond the newest ``keep``."""
    if keep < 1:
        return
    rotated = sorted(
        log_file.parent.glob(f"{log_file.name}.*"),
        key=lambda path: path.stat().st_mtime,
        reverse=True,
    )
    for stale in rotated[keep:]:
        try:
            stale.unlink()
        except OSError:
            logging.getLogger(__name__).debug("Could not remove %s", stale)


def _rotating_file(path: Path, level: str, max_bytes: int, backups: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": "default",
        "filename": str(path),
        "maxBytes": max_bytes,
        "backupCount": backups,
        "level": level,
        "encoding": "utf8",
    }


def setup_logging(log_dir: Optional[str] = None) -> None:
    """
    Route service logs to the console and to rotating files.

    ``app.log`` receives INFO and above and ``error.log`` only errors; both
    live in ``log_dir`` (or the configured log directory). Rotation size and
    the number of kept backups come from ``LOG_MAX_BYTES`` and
    ``LOG_BACKUP_COUNT``.
    """
    directory = Path(log_dir or get_log_dir())
    directory.mkdir(parents=True, exist_ok=True)
    max_bytes = int(os.getenv("LOG_MAX_BYTES", str(5 * 1024 * 1024)))
    backups = int(os.getenv("LOG_BACKUP_COUNT", "3"))

    app_log = directory / "app.log"
    error_log = directory / "error.log"
    for log_file in (app_log, error_log):
        _prune_rotated(log_file, backups)

    loggers: Dict[str, Dict[str, Any]] = {
        name: {"handlers": handlers, "level": level, "propagate": False}
        for name, (handlers, level) in _LOGGERS.items()
    }
    loggers[""] = {"handlers": ["console", "app_file", "error_file"], "level": "INFO"}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": "INFO",
                },
                "app_file": _rotating_file(app_log, "INFO", max_bytes, backups),
                "error_file": _rotating_file(error_log, "ERROR", max_bytes, backups),
            },
            "loggers": loggers,
        }
    )
    logging.getLogger("agenda_sync").info("Logging configured in %s", directory)
