from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from voicelink.api.deps import get_provider_context
from voicelink.core.config import settings
from voicelink.core.database import get_db
from voicelink.core.rate_limit import limiter
from voicelink.providers.context import ProviderContext
from voicelink.schemas.voice import TokenRequest
from voicelink.services.tokens import issue_token

router = APIRouter()


@router.post("/token/{provider}")
@limiter.limit(lambda: settings.TOKEN_RATE_LIMIT)
async def create_token(
    request: Request,
    provider: str,
    payload: TokenRequest | None = None,
    db: Session = Depends(get_db),
    context: ProviderContext = Depends(get_provider_context),
) -> dict:
    """Mint a short-lived access token for one call attempt.

    ``voice`` as the provider means whichever provider is active.
    """
    options = payload.model_dump(exclude_none=True) if payload else {}
    token = await issue_token(db, context, provider, options)
    return token.model_dump(exclude_none=True)
