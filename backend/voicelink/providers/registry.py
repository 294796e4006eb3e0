import json
import logging
import threading
from typing import TYPE_CHECKING, Callable

from voicelink.providers.base import BaseVoiceProvider
from voicelink.providers.exceptions import UnknownProviderError

if TYPE_CHECKING:
    from voicelink.providers.context import ProviderContext

logger = logging.getLogger(__name__)

ProviderConstructor = Callable[[dict, "ProviderContext"], BaseVoiceProvider]


def _cache_key(identity: str, config: dict) -> tuple[str, str]:
    return identity, json.dumps(config, sort_keys=True, default=str)


class ProviderRegistry:
    """Maps provider identities to adapter constructors and caches instances.

    Instances are cached per (identity, config) where config equality is by
    value. Aliases are just a second identity registered to the same
    constructor.
    """

    def __init__(self, context: "ProviderContext") -> None:
        self._context = context
        self._constructors: dict[str, ProviderConstructor] = {}
        self._instances: dict[tuple[str, str], BaseVoiceProvider] = {}
        self._lock = threading.Lock()

    def register(self, identity: str, constructor: ProviderConstructor) -> None:
        with self._lock:
            self._constructors[identity] = constructor
        logger.info("Registered voice provider: %s", identity)

    def unregister(self, identity: str) -> None:
        """Remove a provider and drop any cached instances for it."""
        with self._lock:
            self._constructors.pop(identity, None)
            self._drop_instances(identity)
        logger.info("Unregistered voice provider: %s", identity)

    def is_registered(self, identity: str) -> bool:
        with self._lock:
            return identity in self._constructors

    def constructor_for(self, identity: str) -> ProviderConstructor:
        with self._lock:
            constructor = self._constructors.get(identity)
        if constructor is None:
            raise UnknownProviderError(identity)
        return constructor

    @property
    def available_providers(self) -> list[str]:
        with self._lock:
            return list(self._constructors.keys())

    def create(self, identity: str, config: dict) -> BaseVoiceProvider:
        """Return the cached adapter for (identity, config), constructing it if needed.

        Raises:
            UnknownProviderError: If identity is not registered.
        """
        key = _cache_key(identity, config)
        with self._lock:
            constructor = self._constructors.get(identity)
            if constructor is None:
                raise UnknownProviderError(identity)
            instance = self._instances.get(key)
            if instance is None:
                instance = constructor(dict(config), self._context)
                self._instances[key] = instance
                logger.debug("Created %s adapter (%d cached)", identity, len(self._instances))
            return instance

    def clear_cache(self, identity: str | None = None) -> None:
        """Drop cached instances, for one identity or all of them."""
        with self._lock:
            if identity is None:
                self._instances.clear()
            else:
                self._drop_instances(identity)

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._instances)

    def _drop_instances(self, identity: str) -> None:
        for key in [key for key in self._instances if key[0] == identity]:
            del self._instances[key]
