from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from voicelink.api.deps import get_provider_context
from voicelink.core.config import settings
from voicelink.core.database import get_db
from voicelink.core.rate_limit import limiter
from voicelink.providers.context import ProviderContext
from voicelink.schemas.voice import ChatMessageRequest, ChatMessageResponse
from voicelink.services.chat import send_message

router = APIRouter()


@router.post("/message", response_model=ChatMessageResponse)
@limiter.limit(lambda: settings.MESSAGE_RATE_LIMIT)
async def post_message(
    request: Request,
    payload: ChatMessageRequest,
    db: Session = Depends(get_db),
    context: ProviderContext = Depends(get_provider_context),
) -> ChatMessageResponse:
    reply = await send_message(
        db,
        context,
        payload.message,
        payload.session_id,
        provider=payload.provider,
        metadata={"history": payload.history, "page_url": payload.page_url},
    )
    return ChatMessageResponse(
        response=reply.response,
        provider=reply.provider,
        session_id=reply.session_id,
    )
