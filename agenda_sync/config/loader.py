from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List

import yaml

_DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"
_CONFIG_ENV_VAR = "AGENDA_SYNC_CONFIG"

_DEFAULT_DATABASE_URL = "sqlite:///./data/agenda_sync.db"
_DEFAULT_LOG_DIR = "logs"
_DEFAULT_TIMER = {
    "max_extension_multiple": 3.0,
}
_DEFAULT_REALTIME = {
    "vote_batch_window_ms": 500,
    "allow_host_key_fallback": True,
}
_DEFAULT_LONG_POLL = {
    "max_wait_ms": 25000,
}
_DEFAULT_HEALTH = {
    "persistence_failure_threshold": 3,
}
_DEFAULT_IDENTITY_PROVIDER = {
    "token_url": "https://discord.com/api/oauth2/token",
    "timeout_seconds": 10,
}
_TRUTHY = {"1", "true", "yes", "on"}


def _config_path() -> Path:
    override = os.getenv(_CONFIG_ENV_VAR)
    return Path(override) if override else _DEFAULT_CONFIG_PATH


def load_config() -> Dict[str, Any]:
    """Load the application config from YAML, returning an empty mapping on error."""
    path = _config_path()
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
            if isinstance(data, dict):
                return data
            logging.warning("Config file %s is not a mapping; using defaults.", path)
            return {}
    except FileNotFoundError:
        logging.warning("Configuration file %s not found; using defaults.", path)
        return {}
    except Exception as exc:  # noqa: BLE001
        logging.error("Failed to load configuration from %s: %s", path, exc)
        return {}


def _coerce_positive_int(value: Any, fallback: int) -> int:
    try:
        candidate = int(value)
        return candidate if candidate > 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_non_negative_float(value: Any, fallback: float) -> float:
    try:
        candidate = float(value)
        return candidate if candidate >= 0 else fallback
    except Exception:  # noqa: BLE001
        return fallback


def _coerce_bool(value: Any, fallback: bool) -> bool:
    if value is None:
        return fallback
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in _TRUTHY
    return bool(value)


def _section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = config.get(name)
    return section if isinstance(section, dict) else {}


def get_database_url() -> str:
    """
    Return the SQLAlchemy database URL.

    Priority:
    1) AGENDA_SYNC_DATABASE_URL env var
    2) config.yaml database_url
    3) a SQLite file under ./data
    """
    env_value = os.getenv("AGENDA_SYNC_DATABASE_URL")
    if env_value and env_value.strip():
        return env_value.strip()
    url = load_config().get("database_url")
    return str(url) if url else _DEFAULT_DATABASE_URL


def get_host_user_ids() -> List[str]:
    """Return the global host allow-list; ``"*"`` allows every user."""
    env_value = os.getenv("HOST_USER_IDS")
    if env_value is not None:
        raw: Any = env_value
    else:
        raw = _section(load_config(), "host_auth").get("host_user_ids")
    if raw is None:
        return []
    if isinstance(raw, str):
        parts = raw.split(",")
    elif isinstance(raw, (list, tuple, set)):
        parts = [str(part) for part in raw]
    else:
        parts = [str(raw)]
    return [part.strip() for part in parts if part and part.strip()]


def get_timer_settings() -> Dict[str, float]:
    """Return countdown limits; a multiple of 0 disables the extension cap."""
    section = _section(load_config(), "timer")
    return {
        "max_extension_multiple": _coerce_non_negative_float(
            section.get("max_extension_multiple"),
            _DEFAULT_TIMER["max_extension_multiple"],
        ),
    }


def get_realtime_settings() -> Dict[str, Any]:
    """Return WebSocket room settings sourced from config with safe defaults."""
    section = _section(load_config(), "realtime")
    return {
        "vote_batch_window_ms": _coerce_positive_int(
            section.get("vote_batch_window_ms"),
            _DEFAULT_REALTIME["vote_batch_window_ms"],
        ),
        "allow_host_key_fallback": _coerce_bool(
            section.get("allow_host_key_fallback"),
            _DEFAULT_REALTIME["allow_host_key_fallback"],
        ),
    }


def get_long_poll_settings() -> Dict[str, int]:
    section = _section(load_config(), "long_poll")
    return {
        "max_wait_ms": _coerce_positive_int(
            section.get("max_wait_ms"), _DEFAULT_LONG_POLL["max_wait_ms"]
        ),
    }


def get_health_settings() -> Dict[str, int]:
    section = _section(load_config(), "health")
    return {
        "persistence_failure_threshold": _coerce_positive_int(
            section.get("persistence_failure_threshold"),
            _DEFAULT_HEALTH["persistence_failure_threshold"],
        ),
    }


def get_identity_provider_settings() -> Dict[str, Any]:
    """Return OAuth token exchange settings; credentials come from the environment first."""
    section = _section(load_config(), "identity_provider")

    def _pick(env_name: str, key: str) -> Any:
        value = os.getenv(env_name)
        if value is not None and value.strip():
            return value.strip()
        return section.get(key)

    return {
        "client_id": _pick("DISCORD_CLIENT_ID", "client_id"),
        "client_secret": _pick("DISCORD_CLIENT_SECRET", "client_secret"),
        "redirect_uri": _pick("DISCORD_REDIRECT_URI", "redirect_uri"),
        "token_url": str(
            section.get("token_url") or _DEFAULT_IDENTITY_PROVIDER["token_url"]
        ),
        "timeout_seconds": _coerce_positive_int(
            section.get("timeout_seconds"),
            _DEFAULT_IDENTITY_PROVIDER["timeout_seconds"],
        ),
    }


def get_cors_origins() -> List[str]:
    section = _section(load_config(), "cors")
    origins = section.get("allow_origins")
    if isinstance(origins, str):
        origins = [part.strip() for part in origins.split(",")]
    if not isinstance(origins, list):
        return ["*"]
    cleaned = [str(origin).strip() for origin in origins if str(origin).strip()]
    return cleaned or ["*"]


def get_log_dir() -> str:
    env_value = os.getenv("AGENDA_SYNC_LOG_DIR")
    if env_value and env_value.strip():
        return env_value.strip()
    value = _section(load_config(), "logging").get("log_dir")
    return str(value) if value else _DEFAULT_LOG_DIR
