from typing import Dict

from fastapi import APIRouter, Depends, Request

from agenda_sync.schemas.session import TokenRequest
from agenda_sync.services.identity_provider import IdentityProvider

router = APIRouter(tags=["authentication"])


def get_identity_provider(request: Request) -> IdentityProvider:
    return request.app.state.identity_provider


@router.post("/token")
@router.post("/api/token")
async def exchange_token(
    payload: TokenRequest,
    provider: IdentityProvider = Depends(get_identity_provider),
) -> Dict[str, str]:
    """Exchange an embedded-activity OAuth code for an access token."""
    access_token = await provider.exchange_code(payload.code)
    return {"access_token": access_token}
