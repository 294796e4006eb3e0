"""Server-side token issuance and public provider selection."""

import logging

from sqlalchemy.orm import Session

from voicelink.core.config import settings
from voicelink.providers.base import SECRET_KEY_MARKERS, BaseVoiceProvider
from voicelink.providers.context import ProviderContext
from voicelink.providers.exceptions import InvalidResponseError, ProviderNotConfiguredError
from voicelink.providers.models import AccessToken
from voicelink.services.provider_settings import get_provider, resolve_active_provider

logger = logging.getLogger(__name__)

# Route alias meaning "whichever provider is active".
ACTIVE_PROVIDER_ALIAS = "voice"


def _contains_secret_key(data: dict) -> bool:
    return any(marker in key.lower() for key in data for marker in SECRET_KEY_MARKERS)


def require_ready(adapter: BaseVoiceProvider) -> BaseVoiceProvider:
    """Raise ProviderNotConfiguredError unless the adapter is enabled and configured."""
    if not adapter.is_enabled():
        raise ProviderNotConfiguredError(adapter.name, "Provider is not enabled")
    missing = adapter.missing_settings()
    if missing:
        raise ProviderNotConfiguredError(
            adapter.name, f"Provider is enabled but missing settings: {', '.join(missing)}"
        )
    return adapter


def resolve_provider_identity(db: Session, provider: str) -> str:
    if provider != ACTIVE_PROVIDER_ALIAS:
        return provider
    active = resolve_active_provider(db)
    if active is None:
        raise ProviderNotConfiguredError(provider, "No voice provider is enabled")
    return active


async def issue_token(
    db: Session,
    context: ProviderContext,
    provider: str,
    options: dict | None = None,
) -> AccessToken:
    """Mint an access token for one call attempt through the provider's adapter.

    Raises:
        UnknownProviderError: Provider identity is not registered.
        ProviderNotConfiguredError: Provider is disabled or incomplete.
        UpstreamFailureError / InvalidResponseError: From the adapter.
    """
    identity = resolve_provider_identity(db, provider)
    adapter = require_ready(get_provider(db, context, identity))

    token = await adapter.issue_token(options or {})
    if not adapter.validate_token(token.access_token):
        raise InvalidResponseError(identity, "Provider returned an invalid token")
    if _contains_secret_key(token.model_dump()):
        raise InvalidResponseError(identity, "Token payload contains credential fields")

    logger.info(
        "Issued %s token (agent=%s, call_id=%s, expires_in=%ds)",
        identity,
        token.agent_id,
        token.call_id,
        token.expires_in,
    )
    return token


def get_active_provider_config(db: Session, context: ProviderContext) -> dict:
    """Build the public provider-selection response for the widget."""
    if not settings.VOICE_ENABLED:
        return {"success": False, "error": "Voice features are disabled"}

    identity = resolve_active_provider(db)
    if identity is None:
        return {"success": False, "error": "No voice provider is enabled"}

    adapter = get_provider(db, context, identity)
    if not adapter.is_configured():
        logger.warning(
            "Active provider %s is enabled but missing settings: %s",
            identity,
            adapter.missing_settings(),
        )
        return {
            "success": False,
            "provider": identity,
            "error": f"Voice provider {identity} is enabled but not configured",
        }

    config = adapter.get_client_config()
    if _contains_secret_key(config):
        raise InvalidResponseError(identity, "Client config contains credential fields")
    return {"success": True, "provider": identity, "config": config}
