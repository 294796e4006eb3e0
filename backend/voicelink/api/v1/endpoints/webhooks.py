from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from voicelink.api.deps import get_event_dispatcher, get_provider_context
from voicelink.core.auth import require_admin
from voicelink.core.database import get_db
from voicelink.providers.context import ProviderContext
from voicelink.providers.models import RawWebhookRequest
from voicelink.services.webhooks import EventDispatcher, build_test_webhook, handle_webhook

router = APIRouter()


@router.post("/webhook/{provider}")
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    context: ProviderContext = Depends(get_provider_context),
    dispatcher: EventDispatcher = Depends(get_event_dispatcher),
) -> JSONResponse:
    """Vendor callback endpoint.

    2xx means accepted (or an idempotent replay), 401 means the signature
    did not verify, 503 means the event was accepted but must be redelivered.
    """
    raw = RawWebhookRequest(headers=dict(request.headers), body=await request.body())
    outcome = handle_webhook(db, context, dispatcher, provider, raw)
    return JSONResponse(content=outcome.body, status_code=outcome.status_code)


@router.post("/test-webhook/{provider}", dependencies=[Depends(require_admin)])
def test_webhook(
    provider: str,
    db: Session = Depends(get_db),
    context: ProviderContext = Depends(get_provider_context),
) -> dict:
    """Normalize the provider's sample payload without recording or dispatching it."""
    return build_test_webhook(db, context, provider)
