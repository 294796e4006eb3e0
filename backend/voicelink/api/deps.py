from fastapi import Request

from voicelink.providers.context import ProviderContext
from voicelink.services.webhooks import EventDispatcher


def get_provider_context(request: Request) -> ProviderContext:
    return request.app.state.provider_context


def get_event_dispatcher(request: Request) -> EventDispatcher:
    return request.app.state.event_dispatcher
