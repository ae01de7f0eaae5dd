from warden.events.event_bus import EventType
from warden.events.event_bus import event_bus

__all__ = ["EventType", "event_bus"]
