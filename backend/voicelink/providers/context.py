import httpx

from voicelink.providers.base import BaseVoiceProvider
from voicelink.providers.registry import ProviderRegistry
from voicelink.providers.sessions import ChatSessionStore
from voicelink.providers.vault import CredentialVault


class ProviderContext:
    """Owns everything provider adapters share for one application instance.

    The registry and its instance cache, the credential vault, HTTP client
    settings and the chat session store all live here rather than in module
    globals. The app builds one in its lifespan; tests build their own.
    """

    def __init__(
        self,
        vault: CredentialVault,
        *,
        http_timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        chat_sessions: ChatSessionStore | None = None,
        webhook_tolerance_seconds: int = 1800,
    ) -> None:
        self.vault = vault
        self.http_timeout = http_timeout
        self.transport = transport
        self.chat_sessions = chat_sessions or ChatSessionStore()
        self.webhook_tolerance_seconds = webhook_tolerance_seconds
        self.registry = ProviderRegistry(self)

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.http_timeout, transport=self.transport)

    def create(self, identity: str, config: dict) -> BaseVoiceProvider:
        return self.registry.create(identity, config)
