from voicelink.client.errors import (
    AlreadyActiveError,
    ClientError,
    ProviderLookupError,
    SDKNotReadyError,
    TokenRequestError,
    VoiceSDKError,
    classify_error,
)
from voicelink.client.events import EventEmitter
from voicelink.client.factory import ClientProviderFactory
from voicelink.client.sdk import SDKReadiness, VoiceSDK
from voicelink.client.session import (
    CallSession,
    ConnectionState,
    ElevenLabsCallSession,
    RetellCallSession,
)

__all__ = [
    "AlreadyActiveError",
    "CallSession",
    "ClientError",
    "ClientProviderFactory",
    "ConnectionState",
    "ElevenLabsCallSession",
    "EventEmitter",
    "ProviderLookupError",
    "RetellCallSession",
    "SDKNotReadyError",
    "SDKReadiness",
    "TokenRequestError",
    "VoiceSDK",
    "VoiceSDKError",
    "classify_error",
    "create_client_factory",
]


def create_client_factory(rest_url: str, **kwargs) -> ClientProviderFactory:
    """Factory with the built-in call sessions registered."""
    factory = ClientProviderFactory(rest_url, **kwargs)
    factory.register("retell", RetellCallSession)
    factory.register("n8n-retell", RetellCallSession)
    factory.register("elevenlabs", ElevenLabsCallSession)
    return factory
