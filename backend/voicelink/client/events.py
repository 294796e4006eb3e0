import logging
from typing import Callable

from voicelink.providers.models import EventType, StandardEvent

logger = logging.getLogger(__name__)

Listener = Callable[[StandardEvent], None]


class EventEmitter:
    """Publish/subscribe over the standard event vocabulary.

    Listeners for an event type are called synchronously, in registration
    order. A listener that raises is logged and does not stop delivery to
    the listeners after it.
    """

    def __init__(self) -> None:
        self._listeners: dict[EventType, list[Listener]] = {event_type: [] for event_type in EventType}

    def on(self, event_type: EventType | str, listener: Listener) -> None:
        self._listeners[EventType(event_type)].append(listener)

    def off(self, event_type: EventType | str, listener: Listener) -> None:
        listeners = self._listeners[EventType(event_type)]
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: StandardEvent) -> None:
        for listener in list(self._listeners[EventType(event.type)]):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener for %s event raised", event.type)

    def listener_count(self, event_type: EventType | str) -> int:
        return len(self._listeners[EventType(event_type)])

    def clear(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()
