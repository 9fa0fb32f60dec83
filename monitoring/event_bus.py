"""
In-process event bus for the monitoring core.

This module provides a simple pub/sub mechanism that lets the scheduler's
jobs, the error aggregator and the notification dispatcher talk to each
other without holding references to one another.

Design decisions:
- Synchronous delivery on the publisher's thread
- Subscriptions are keyed by a closed set of event names (EventName);
  unknown names are rejected at subscribe and publish time
- Events are delivered to subscribers in registration order
- A failing handler is logged and skipped, the others still run
- Thread-safe: handlers are snapshotted under a lock before delivery, so a
  job thread and a request thread can publish at the same time
"""

import logging
import threading
from collections import defaultdict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Union
from uuid import uuid4

from shared.models import utcnow

logger = logging.getLogger("event_bus")


class EventName(str, Enum):
    """Every event the monitoring core publishes."""
    # System events
    TASK_ERROR = "system:task_error"
    HIGH_MEMORY_USAGE = "system:high_memory_usage"
    HEALTH_CHECK_FAILED = "system:health_check_failed"
    DAILY_REPORT = "system:daily_report"

    # Error tracking events
    ERROR_TRACKED = "error:tracked"
    ERROR_THRESHOLD_EXCEEDED = "error:threshold_exceeded"

    # Inventory events
    INVENTORY_LOW = "inventory:low"
    INVENTORY_EXPIRING = "inventory:expiring"

    # Notification events
    NOTIFICATION_CREATED = "notification:created"


@dataclass
class Event:
    """
    Something that happened in the monitoring core.

    Attributes:
        event_type: Which EventName this is (used for routing)
        payload: The event-specific data
        source: Which component published the event
        event_id: Unique identifier for this event instance
        timestamp: When the event occurred
    """
    event_type: EventName
    payload: dict[str, Any]
    source: str
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.event_type = EventName(self.event_type)

    def __str__(self) -> str:
        return f"Event({self.event_type.value}, id={self.event_id[:8]}, source={self.source})"


# Type alias for event handler functions
EventHandler = Callable[[Event], None]


class EventBus:
    """
    Simple in-memory event bus implementing pub/sub.

    Example usage:
        bus = EventBus()

        def on_low_stock(event):
            print(f"Low stock: {event.payload['product_id']}")
        bus.subscribe(EventName.INVENTORY_LOW, on_low_stock)

        bus.emit(EventName.INVENTORY_LOW, {"product_id": "prod-001"}, source="jobs")
    """

    def __init__(self, max_logged_events: int = 1000):
        # Map of event name -> list of handlers
        self._subscribers: dict[EventName, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

        # Recent events, for debugging and tests
        self._event_log: deque[Event] = deque(maxlen=max_logged_events)
        self._log_events: bool = True

    def subscribe(self, event_name: Union[EventName, str], handler: EventHandler) -> None:
        """
        Subscribe to events of a specific name.

        Raises:
            ValueError: If event_name is not a known EventName
        """
        name = EventName(event_name)
        with self._lock:
            self._subscribers[name].append(handler)
        logger.debug(f"Subscribed handler to '{name.value}' events")

    def unsubscribe(self, event_name: Union[EventName, str], handler: EventHandler) -> bool:
        """
        Unsubscribe a handler.

        Returns:
            True if the handler was found and removed, False otherwise
        """
        name = EventName(event_name)
        with self._lock:
            try:
                self._subscribers[name].remove(handler)
            except ValueError:
                return False
        logger.debug(f"Unsubscribed handler from '{name.value}' events")
        return True

    def publish(self, event: Event) -> int:
        """
        Publish an event to every handler registered for its name.

        Returns:
            Number of handlers that received the event

        Note: Handlers are called synchronously in the order they subscribed.
        If a handler raises an exception, it's logged but doesn't stop other handlers.
        """
        with self._lock:
            handlers = list(self._subscribers.get(event.event_type, ()))
            if self._log_events:
                self._event_log.append(event)

        logger.info(f"Publishing: {event}")

        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Handler raised exception for {event}")

        if not handlers:
            logger.debug(f"No handlers for event '{event.event_type.value}'")

        return len(handlers)

    def emit(
        self,
        event_name: Union[EventName, str],
        payload: dict[str, Any],
        source: str = "monitoring",
    ) -> int:
        """Build an Event and publish it."""
        return self.publish(Event(event_type=EventName(event_name), payload=payload, source=source))

    def get_subscriber_count(self, event_name: Union[EventName, str]) -> int:
        with self._lock:
            return len(self._subscribers.get(EventName(event_name), ()))

    def get_event_log(self) -> list[Event]:
        """Recently published events, oldest first."""
        with self._lock:
            return list(self._event_log)

    def events_named(self, event_name: Union[EventName, str]) -> list[Event]:
        name = EventName(event_name)
        return [e for e in self.get_event_log() if e.event_type == name]

    def clear_event_log(self) -> None:
        with self._lock:
            self._event_log.clear()

    def clear_subscribers(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def set_logging(self, enabled: bool) -> None:
        """Enable or disable the event log."""
        self._log_events = enabled
