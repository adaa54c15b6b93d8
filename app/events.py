"""Event bus for NetGuard state changes.

The controller publishes what scans, connects, discovery passes and
device actions did. Anything outside the core (an API layer,
notifications) subscribes without holding a reference to the controller.

Usage:
    from app.events import EventBus, EventType

    bus = EventBus()
    bus.subscribe(EventType.DEVICE_DISCOVERED, lambda e: print(e.data["name"]))
    bus.publish(EventType.NETWORK_CONNECTED, {"ssid": "HomeNet"})
"""
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Callable, Dict, List, Optional

from config import get_logger

logger = get_logger(__name__)


class EventType(Enum):
    """What happened. The payload keys are listed per member."""

    NETWORKS_SCANNED = auto()      # count, ssids
    NETWORK_CONNECTED = auto()     # ssid, previous, assigned_ip
    NETWORK_DISCONNECTED = auto()  # ssid
    CONNECTION_CHANGED = auto()    # old, new (the OS moved without us)

    DEVICE_DISCOVERED = auto()     # network, mac, ip, name, type
    DEVICES_DISCOVERED = auto()    # network, count, new, duration_ms
    DEVICE_BLOCKED = auto()        # mac, ip, reason
    DEVICE_UNBLOCKED = auto()      # mac, ip
    TIME_LIMIT_EXCEEDED = auto()   # mac, limit_minutes, used_minutes

    APP_STARTING = auto()
    APP_STOPPING = auto()


@dataclass
class Event:
    """One published occurrence of an EventType."""
    event_type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def __str__(self) -> str:
        return f"Event({self.event_type.name}, data={self.data})"


EventHandler = Callable[[Event], None]

_STOP = object()


class EventBus:
    """Thread-safe publish/subscribe bus.

    In async mode (the default) one daemon thread delivers events in
    publish order, so a slow handler never blocks a scheduler tick. With
    ``async_mode=False`` handlers run inline in the publisher's thread.
    """

    def __init__(self, async_mode: bool = True):
        self._subscribers: Dict[EventType, List[EventHandler]] = {}
        self._lock = threading.Lock()
        self._async_mode = async_mode
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None

        if async_mode:
            self._worker = threading.Thread(target=self._deliver_forever, daemon=True, name="event-bus")
            self._worker.start()

    def _deliver_forever(self) -> None:
        while True:
            event = self._queue.get()
            if event is _STOP:
                return
            self._deliver(event)

    def _deliver(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # One broken subscriber must not starve the rest
                logger.error(f"Handler for {event.event_type.name} failed: {e}", exc_info=True)

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        with self._lock:
            self._subscribers.setdefault(event_type, []).append(handler)
        logger.debug(f"Subscribed to {event_type.name}")

    def publish(self, event_type: EventType, data: Optional[Dict[str, Any]] = None) -> None:
        """Deliver an event to every subscriber of its type.

        Example:
            >>> bus.publish(EventType.DEVICES_DISCOVERED, {"network": "HomeNet", "count": 7})
        """
        event = Event(event_type, data or {})
        if self._async_mode:
            self._queue.put(event)
        else:
            self._deliver(event)
        logger.debug(f"Published {event_type.name}")

    def shutdown(self, timeout: float = 1.0) -> None:
        """Deliver what is already queued, then stop the worker."""
        if self._worker is None:
            return
        self._queue.put(_STOP)
        self._worker.join(timeout=timeout)
        self._worker = None
        logger.debug("Event bus shut down")


_global_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Process-wide bus used when no bus is injected."""
    global _global_event_bus
    if _global_event_bus is None:
        _global_event_bus = EventBus()
    return _global_event_bus
