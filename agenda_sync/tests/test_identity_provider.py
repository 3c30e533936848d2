from urllib.parse import parse_qs

import httpx
import pytest

from agenda_sync.services.errors import SessionError
from agenda_sync.services.identity_provider import (
    IdentityProvider,
    IdentityProviderSettings,
    TokenExchangeFailed,
    redirect_candidates,
)

SETTINGS = IdentityProviderSettings(
    client_id="client",
    client_secret="secret",
    redirect_uri="https://example.test/callback",
    token_url="https://idp.test/oauth2/token",
)


def _provider(handler, settings=SETTINGS):
    return IdentityProvider(settings, transport=httpx.MockTransport(handler))


def test_redirect_candidates_toggle_trailing_slash():
    assert redirect_candidates("https://a.test/cb") == [
        "https://a.test/cb",
        "https://a.test/cb/",
    ]
    assert redirect_candidates("https://a.test/cb/") == [
        "https://a.test/cb/",
        "https://a.test/cb",
    ]


@pytest.mark.anyio("asyncio")
async def test_exchange_code_returns_access_token():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(parse_qs(request.content.decode()))
        return httpx.Response(200, json={"access_token": "tok-1"})

    token = await _provider(handler).exchange_code("abc")

    assert token == "tok-1"
    assert seen[0]["grant_type"] == ["authorization_code"]
    assert seen[0]["code"] == ["abc"]
    assert seen[0]["redirect_uri"] == ["https://example.test/callback"]


@pytest.mark.anyio("asyncio")
async def test_invalid_grant_retries_alternate_redirect():
    redirects = []

    def handler(request: httpx.Request) -> httpx.Response:
        redirect_uri = parse_qs(request.content.decode())["redirect_uri"][0]
        redirects.append(redirect_uri)
        if redirect_uri.endswith("/"):
            return httpx.Response(200, json={"access_token": "tok-2"})
        return httpx.Response(400, json={"error": "invalid_grant"})

    token = await _provider(handler).exchange_code("abc")

    assert token == "tok-2"
    assert redirects == [
        "https://example.test/callback",
        "https://example.test/callback/",
    ]


@pytest.mark.anyio("asyncio")
async def test_other_errors_do_not_retry():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(401, json={"error": "invalid_client"})

    with pytest.raises(TokenExchangeFailed) as excinfo:
        await _provider(handler).exchange_code("abc")

    assert len(calls) == 1
    payload = excinfo.value.to_payload()
    assert payload["error"] == "token_exchange_failed"
    assert payload["details"] == {"error": "invalid_client"}
    assert len(payload["triedRedirects"]) == 2


@pytest.mark.anyio("asyncio")
async def test_missing_configuration_is_server_error():
    provider = _provider(
        lambda request: httpx.Response(200, json={}),
        settings=IdentityProviderSettings(client_id="client"),
    )

    with pytest.raises(SessionError) as excinfo:
        await provider.exchange_code("abc")

    assert excinfo.value.code == "server_misconfigured"
    assert excinfo.value.status_code == 500


@pytest.mark.anyio("asyncio")
async def test_transport_failure_is_reported():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(SessionError) as excinfo:
        await _provider(handler).exchange_code("abc")

    assert excinfo.value.code == "token_exchange_exception"


def test_settings_warnings_and_diagnostics():
    settings = IdentityProviderSettings.from_config(
        {"client_id": "client", "client_secret": "", "redirect_uri": None}
    )
    provider = IdentityProvider(settings)

    assert settings.configured is False
    assert settings.warnings() == [
        "DISCORD_CLIENT_SECRET not configured",
        "DISCORD_REDIRECT_URI not configured",
    ]
    assert provider.diagnostics() == {
        "clientId": "client",
        "redirectUri": None,
        "secretConfigured": False,
    }
