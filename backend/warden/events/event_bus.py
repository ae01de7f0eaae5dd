"""In-process publish/subscribe for login health and agent run notifications.

Handlers are plain coroutines keyed by :class:`EventType`.  Services publish
after their database write has been committed, so a handler always sees the
persisted state.
"""

import logging
from enum import Enum
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Dict
from typing import List

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class EventType(str, Enum):
    LOGIN_CREATED = "login_created"
    LOGIN_STATUS_UPDATED = "login_status_updated"
    LOGIN_DELETED = "login_deleted"

    AGENT_CREATED = "agent_created"
    AGENT_UPDATED = "agent_updated"

    RUN_CREATED = "run_created"
    RUN_UPDATED = "run_updated"


class EventBus:
    def __init__(self):
        self._handlers: Dict[EventType, List[Handler]] = {}

    async def publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        """Deliver *data* to every handler of *event_type* in subscription order.

        A failing handler is logged and skipped; publishing never raises.
        """
        handlers = list(self._handlers.get(event_type, ()))
        if not handlers:
            return

        logger.debug(f"Publishing {event_type.value} to {len(handlers)} handler(s)")
        for handler in handlers:
            try:
                await handler(data)
            except Exception as e:
                logger.error(f"Handler for {event_type.value} failed: {e}")

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.get(event_type)
        if not handlers or handler not in handlers:
            return
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event_type]


# Global event bus instance
event_bus = EventBus()
