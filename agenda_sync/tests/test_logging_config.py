import logging
import os

from agenda_sync.utils.logging_config import setup_logging


def test_setup_logging_prunes_old_backups(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_BACKUP_COUNT", "1")
    for age, name in enumerate(["app.log.1", "app.log.2", "app.log.3"]):
        backup = tmp_path / name
        backup.write_text("old", encoding="utf-8")
        os.utime(backup, (1_000_000 - age, 1_000_000 - age))

    setup_logging(str(tmp_path))

    assert sorted(path.name for path in tmp_path.glob("app.log.*")) == ["app.log.1"]


def test_errors_reach_error_log(tmp_path):
    setup_logging(str(tmp_path))

    logging.getLogger("agenda_sync.services").error("persistence broke: %s", "locked")
    logging.getLogger("audit").info("POST /session/start 200")

    error_log = (tmp_path / "error.log").read_text(encoding="utf-8")
    app_log = (tmp_path / "app.log").read_text(encoding="utf-8")
    assert "persistence broke: locked" in error_log
    assert "POST /session/start" in app_log
    assert "POST /session/start" not in error_log
