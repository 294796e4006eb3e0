from voicelink.providers.adapters import ElevenLabsProvider, N8nRetellProvider, RetellProvider
from voicelink.providers.base import BaseVoiceProvider
from voicelink.providers.context import ProviderContext
from voicelink.providers.registry import ProviderRegistry
from voicelink.providers.sessions import ChatSessionStore
from voicelink.providers.vault import CredentialVault

__all__ = [
    "BaseVoiceProvider",
    "ChatSessionStore",
    "CredentialVault",
    "ElevenLabsProvider",
    "N8nRetellProvider",
    "ProviderContext",
    "ProviderRegistry",
    "RetellProvider",
    "build_provider_context",
    "register_default_providers",
]


def register_default_providers(context: ProviderContext) -> ProviderContext:
    """Register the built-in adapters. ``n8n-retell`` is a Retell variant."""
    context.registry.register("retell", RetellProvider)
    context.registry.register("n8n-retell", N8nRetellProvider)
    context.registry.register("elevenlabs", ElevenLabsProvider)
    return context


def build_provider_context(**overrides) -> ProviderContext:
    """Create a ProviderContext from settings with all built-in adapters registered."""
    from voicelink.core.config import settings

    options = {
        "http_timeout": settings.PROVIDER_HTTP_TIMEOUT_SECONDS,
        "chat_sessions": ChatSessionStore(ttl_seconds=settings.CHAT_SESSION_TTL_SECONDS),
        "webhook_tolerance_seconds": settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS,
    }
    options.update(overrides)
    vault = options.pop("vault", None) or CredentialVault.from_settings()
    return register_default_providers(ProviderContext(vault, **options))
