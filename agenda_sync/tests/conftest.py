import pytest
from fastapi.testclient import TestClient

from agenda_sync.main import app

HOST_ID = "host-1"
OTHER_HOST_ID = "host-2"
PARTICIPANT_ID = "guest-1"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="function")
def app_env(monkeypatch, tmp_path):
    """Point the app at a throwaway SQLite file, log dir and host allow-list."""
    database_path = tmp_path / "agenda_sync.db"
    monkeypatch.setenv("AGENDA_SYNC_DATABASE_URL", f"sqlite:///{database_path}")
    monkeypatch.setenv("AGENDA_SYNC_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("HOST_USER_IDS", f"{HOST_ID},{OTHER_HOST_ID}")
    for name in ("DISCORD_CLIENT_ID", "DISCORD_CLIENT_SECRET", "DISCORD_REDIRECT_URI"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture(scope="function")
def client(app_env):
    """Provides a TestClient whose lifespan built a fresh store and registry."""
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="function")
def started_session(client: TestClient):
    """A session created by HOST_ID, returned as ``(session_id, response body)``."""
    response = client.post(
        "/session/start", json={"userId": HOST_ID, "username": "Host"}
    )
    assert response.status_code == 200
    body = response.json()
    return body["sessionId"], body
