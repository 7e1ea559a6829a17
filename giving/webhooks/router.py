from typing import Mapping, Optional

from giving.webhooks.events import EventKind
from giving.webhooks.handlers import EventHandler, IgnoredEventHandler


class EventRouter:
    """Maps gateway event types onto handlers. Unknown types go to the fallback."""

    def __init__(self, handlers: Mapping[EventKind, EventHandler], fallback: Optional[EventHandler] = None):
        missing = [kind.value for kind in EventKind.known() if kind not in handlers]
        if missing:
            raise ValueError(f"No handler registered for: {', '.join(missing)}")

        self._handlers = dict(handlers)
        self._fallback = fallback or IgnoredEventHandler()

    def route(self, event_type: str) -> EventHandler:
        kind = EventKind.from_type(event_type)
        if kind is EventKind.UNKNOWN:
            return self._fallback
        return self._handlers[kind]
