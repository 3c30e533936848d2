from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from agenda_sync.services.errors import SessionError

logger = logging.getLogger(__name__)


class TokenExchangeFailed(SessionError):
    status_code = 400

    def __init__(self, details: Any, tried_redirects: List[str]) -> None:
        super().__init__("token_exchange_failed", "The identity provider rejected the code")
        self.details = details
        self.tried_redirects = tried_redirects

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["details"] = self.details
        payload["triedRedirects"] = self.tried_redirects
        return payload


@dataclass(frozen=True)
class IdentityProviderSettings:
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    token_url: str = "https://discord.com/api/oauth2/token"
    timeout_seconds: float = 10

    @classmethod
    def from_config(cls, settings: Dict[str, Any]) -> "IdentityProviderSettings":
        return cls(
            client_id=settings.get("client_id") or None,
            client_secret=settings.get("client_secret") or None,
            redirect_uri=settings.get("redirect_uri") or None,
            token_url=settings.get("token_url") or cls.token_url,
            timeout_seconds=settings.get("timeout_seconds") or cls.timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def warnings(self) -> List[str]:
        missing = []
        if not self.client_id:
            missing.append("DISCORD_CLIENT_ID not configured")
        if not self.client_secret:
            missing.append("DISCORD_CLIENT_SECRET not configured")
        if not self.redirect_uri:
            missing.append("DISCORD_REDIRECT_URI not configured")
        return missing


def redirect_candidates(redirect_uri: str) -> List[str]:
    """The provider matches redirect URIs exactly; try with and without the trailing slash."""
    primary = str(redirect_uri)
    alternate = primary[:-1] if primary.endswith("/") else f"{primary}/"
    return [primary] if alternate == primary or not alternate else [primary, alternate]


class IdentityProvider:
    """Exchanges an OAuth authorization code for an access token."""

    def __init__(
        self,
        settings: IdentityProviderSettings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._transport = transport

    async def exchange_code(self, code: str) -> str:
        if not self.settings.configured:
            raise SessionError(
                "server_misconfigured",
                "Identity provider credentials are not configured",
                status_code=500,
            )

        candidates = redirect_candidates(self.settings.redirect_uri)
        last_details: Any = None
        async with httpx.AsyncClient(
            timeout=self.settings.timeout_seconds, transport=self._transport
        ) as client:
            for redirect_uri in candidates:
                try:
                    response = await client.post(
                        self.settings.token_url,
                        data={
                            "client_id": self.settings.client_id,
                            "client_secret": self.settings.client_secret,
                            "grant_type": "authorization_code",
                            "code": code,
                            "redirect_uri": redirect_uri,
                        },
                        headers={"Accept": "application/json"},
                    )
                except httpx.HTTPError as exc:
                    logger.error("Token exchange request failed: %s", exc)
                    raise SessionError(
                        "token_exchange_exception", str(exc), status_code=502
                    ) from exc

                try:
                    data = response.json()
                except ValueError:
                    data = {}
                if response.is_success and isinstance(data, dict) and data.get("access_token"):
                    return str(data["access_token"])

                last_details = data
                logger.warning(
                    "Token exchange rejected: status=%s redirect_uri=%s",
                    response.status_code,
                    redirect_uri,
                )
                if not isinstance(data, dict) or data.get("error") != "invalid_grant":
                    break

        raise TokenExchangeFailed(last_details, candidates)

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "clientId": self.settings.client_id,
            "redirectUri": self.settings.redirect_uri,
            "secretConfigured": bool(self.settings.client_secret),
        }
