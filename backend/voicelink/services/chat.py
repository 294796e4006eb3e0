import logging

from sqlalchemy.orm import Session

from voicelink.providers.context import ProviderContext
from voicelink.providers.exceptions import NotSupportedError
from voicelink.providers.models import Capability, TextReply
from voicelink.services.provider_settings import get_provider
from voicelink.services.tokens import require_ready, resolve_provider_identity

logger = logging.getLogger(__name__)


async def send_message(
    db: Session,
    context: ProviderContext,
    message: str,
    session_id: str,
    provider: str = "voice",
    metadata: dict | None = None,
) -> TextReply:
    """Relay a text chat message to the provider and return its reply.

    Raises:
        NotSupportedError: The provider has no text chat capability.
        ProviderNotConfiguredError: The provider is disabled or incomplete.
    """
    identity = resolve_provider_identity(db, provider)
    adapter = require_ready(get_provider(db, context, identity))
    if not adapter.supports(Capability.TEXT_CHAT):
        raise NotSupportedError(identity, Capability.TEXT_CHAT.value)

    reply_context = dict(metadata or {})
    reply_context["session_id"] = session_id
    reply = await adapter.send_text_message(message, reply_context)
    logger.info("Relayed chat message for session %s via %s", session_id, identity)
    return reply
