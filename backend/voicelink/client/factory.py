import json
import logging
from typing import Callable

import httpx

from voicelink.client.errors import ProviderLookupError
from voicelink.client.events import EventEmitter
from voicelink.client.sdk import SDKReadiness
from voicelink.client.session import CallSession
from voicelink.client.tokens import TokenClient

logger = logging.getLogger(__name__)

SessionConstructor = Callable[..., CallSession]

# Only these keys of the server's public config reach a session.
_PUBLIC_CONFIG_KEYS = ("sampleRate", "enabled")


class ClientProviderFactory:
    """Client-side registry of call session classes with an instance cache.

    Mirrors the server registry: instances are cached per (name, config)
    with config compared by value. Sessions for providers sharing a vendor
    SDK (e.g. ``retell`` and ``n8n-retell``) share one SDKReadiness.
    """

    def __init__(
        self,
        rest_url: str,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sdk_timeout: float | None = None,
    ) -> None:
        self.rest_url = rest_url.rstrip("/")
        self.token_client = TokenClient(self.rest_url, timeout=timeout, transport=transport)
        self._sdk_timeout = sdk_timeout
        self._constructors: dict[str, SessionConstructor] = {}
        self._instances: dict[tuple[str, str], CallSession] = {}
        self._sdks: dict[str, SDKReadiness] = {}

    def register(self, name: str, constructor: SessionConstructor) -> None:
        self._constructors[name] = constructor
        logger.debug("Registered client voice provider: %s", name)

    def get_available_providers(self) -> list[str]:
        return list(self._constructors.keys())

    def is_available(self, name: str) -> bool:
        return name in self._constructors

    def sdk_readiness(self, sdk_name: str) -> SDKReadiness:
        """The readiness signal the host page resolves once the vendor SDK loads."""
        if sdk_name not in self._sdks:
            self._sdks[sdk_name] = SDKReadiness()
        return self._sdks[sdk_name]

    def create(self, name: str, config: dict) -> CallSession:
        constructor = self._constructors.get(name)
        if constructor is None:
            raise ProviderLookupError(f"Unknown voice provider: {name}")

        key = (name, json.dumps(config, sort_keys=True, default=str))
        instance = self._instances.get(key)
        if instance is None:
            sdk_name = getattr(constructor, "sdk_name", "") or name
            instance = constructor(
                config,
                self.token_client,
                self.sdk_readiness(sdk_name),
                EventEmitter(),
                self._sdk_timeout,
            )
            self._instances[key] = instance
        return instance

    def clear_cache(self) -> None:
        self._instances.clear()

    async def get_enabled_provider(self) -> CallSession:
        """Ask the server which provider is active and build its session.

        Raises:
            ProviderLookupError: At the first failed validation step, with a
                message specific to that step.
        """
        data = await self.token_client.fetch_enabled_provider()
        if not data or not isinstance(data, dict):
            raise ProviderLookupError("No data received from server")
        if data.get("success") is not True:
            raise ProviderLookupError(data.get("error") or "Failed to get enabled provider")

        provider = data.get("provider")
        if not provider:
            raise ProviderLookupError("Provider name not specified in response")

        config = data.get("config")
        if not isinstance(config, dict):
            raise ProviderLookupError("Provider configuration object is missing")

        agent_id = config.get("agentId") or config.get("agent_id")
        if not agent_id:
            raise ProviderLookupError(f"Agent ID not configured for provider: {provider}")

        if not self.is_available(provider):
            raise ProviderLookupError(f"Voice provider not available: {provider}")

        session_config = {
            "provider": provider,
            "agentId": agent_id,
            "isPublic": config.get("isPublic", True),
            "restUrl": self.rest_url,
        }
        for key in _PUBLIC_CONFIG_KEYS:
            if config.get(key) is not None:
                session_config[key] = config[key]

        logger.info("Using voice provider %s (agent %s)", provider, agent_id)
        return self.create(provider, session_config)
