from voicelink.providers.adapters.elevenlabs import ElevenLabsProvider
from voicelink.providers.adapters.n8n_retell import N8nRetellProvider
from voicelink.providers.adapters.retell import RetellProvider

__all__ = [
    "ElevenLabsProvider",
    "N8nRetellProvider",
    "RetellProvider",
]
