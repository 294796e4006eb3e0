import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from voicelink.api.deps import get_provider_context
from voicelink.core.auth import require_admin
from voicelink.core.database import get_db
from voicelink.providers.context import ProviderContext
from voicelink.providers.exceptions import ProviderError
from voicelink.schemas.voice import (
    ConnectionTestResponse,
    ProviderListResponse,
    ProviderSettingsUpdate,
    ProviderStatusResponse,
)
from voicelink.services.provider_settings import (
    get_provider,
    resolve_active_provider,
    save_provider_config,
)
from voicelink.services.tokens import get_active_provider_config

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/providers")
def active_provider(
    db: Session = Depends(get_db),
    context: ProviderContext = Depends(get_provider_context),
) -> dict:
    """Return the active provider and its public (secret-free) config."""
    return get_active_provider_config(db, context)


@router.get("/providers/list", response_model=ProviderListResponse)
def list_providers(
    db: Session = Depends(get_db),
    context: ProviderContext = Depends(get_provider_context),
) -> ProviderListResponse:
    providers = [
        get_provider(db, context, identity).metadata()
        for identity in context.registry.available_providers
    ]
    return ProviderListResponse(providers=providers, active_provider=resolve_active_provider(db))


@router.get(
    "/providers/{provider}/status",
    response_model=ProviderStatusResponse,
    dependencies=[Depends(require_admin)],
)
def provider_status(
    provider: str,
    db: Session = Depends(get_db),
    context: ProviderContext = Depends(get_provider_context),
) -> ProviderStatusResponse:
    adapter = get_provider(db, context, provider)
    return ProviderStatusResponse(
        provider=provider,
        metadata=adapter.metadata(),
        missing_settings=adapter.missing_settings(),
    )


@router.post(
    "/providers/{provider}/test",
    response_model=ConnectionTestResponse,
    dependencies=[Depends(require_admin)],
)
async def test_provider_connection(
    provider: str,
    db: Session = Depends(get_db),
    context: ProviderContext = Depends(get_provider_context),
) -> ConnectionTestResponse:
    """Make an authenticated call to the vendor with the stored credentials."""
    adapter = get_provider(db, context, provider)
    try:
        result = await adapter.test_connection()
    except ProviderError as exc:
        logger.warning("Connection test for %s failed: %s", provider, exc)
        return ConnectionTestResponse(success=False, message=exc.message, code=exc.code)
    return ConnectionTestResponse(success=result.success, message=result.message)


@router.put(
    "/providers/{provider}",
    response_model=ProviderStatusResponse,
    dependencies=[Depends(require_admin)],
)
def update_provider_settings(
    provider: str,
    request: ProviderSettingsUpdate,
    db: Session = Depends(get_db),
    context: ProviderContext = Depends(get_provider_context),
) -> ProviderStatusResponse:
    try:
        save_provider_config(
            db,
            context,
            provider,
            is_enabled=request.is_enabled,
            agent_id=request.agent_id,
            options=request.options,
            secrets=request.secrets,
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    adapter = get_provider(db, context, provider)
    return ProviderStatusResponse(
        provider=provider,
        metadata=adapter.metadata(),
        missing_settings=adapter.missing_settings(),
    )
