"""In-memory message bus for booking lifecycle events.

Events are dispatched synchronously, on the publishing thread, to every
handler registered for the event name at the time of publishing.

CRITICAL INVARIANT: publish() MUST NOT raise exceptions.
A failing subscriber must never undo or block a state transition that
has already committed, so failures are logged and dropped.
"""

import threading
from typing import Any, Callable, Dict, List, Optional

from core.logger import get_logger

logger = get_logger(__name__)

Handler = Callable[[Dict[str, Any]], None]


class MessageBus:
    """
    Thread-safe in-memory publish/subscribe message bus.

    Subscriber lists are guarded by a lock; handlers run outside it so a
    handler may itself publish or subscribe.

    Usage:
        bus = MessageBus()
        bus.subscribe("booking.completed", handler_func)
        bus.publish("booking.completed", {"booking_id": "bk_123"})
    """

    def __init__(self, max_history: int = 1000) -> None:
        """
        Initialize empty message bus.

        Args:
            max_history: Number of published events kept for inspection
        """
        self._subscribers: Dict[str, List[Handler]] = {}
        self._event_history: List[Dict[str, Any]] = []
        self._max_history = max_history
        self._lock = threading.Lock()
        logger.debug("MessageBus initialized")

    def subscribe(self, event_name: str, handler: Handler) -> None:
        """
        Subscribe a handler to an event type.

        Args:
            event_name: Event type to subscribe to (e.g., "booking.completed")
            handler: Callback function that accepts event payload dict
        """
        with self._lock:
            self._subscribers.setdefault(event_name, []).append(handler)
        logger.debug(f"Handler subscribed to '{event_name}'")

    def publish(self, event_name: str, payload: Dict[str, Any]) -> int:
        """
        Publish an event to all subscribers.

        CRITICAL: This method MUST NOT raise exceptions.

        Args:
            event_name: Event type to publish (e.g., "booking.link.issued")
            payload: Event data dictionary

        Returns:
            Number of handlers that successfully processed the event
        """
        with self._lock:
            self._event_history.append({"event_name": event_name, "payload": payload})
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history:]
            handlers = list(self._subscribers.get(event_name, []))

        if not handlers:
            logger.debug(f"No handlers for event '{event_name}'")
            return 0

        success_count = 0
        for handler in handlers:
            try:
                handler(payload)
                success_count += 1
            except Exception as e:
                logger.warning(
                    f"Handler failed for event '{event_name}': {e}. "
                    "Event dropped (non-blocking)."
                )

        logger.debug(
            f"Event '{event_name}' delivered to {success_count}/{len(handlers)} handlers"
        )
        return success_count

    def get_event_history(self, event_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get event history for testing/debugging.

        Args:
            event_name: Filter by event type, or None for all events

        Returns:
            List of event records (event_name, payload)
        """
        with self._lock:
            if event_name is None:
                return list(self._event_history)
            return [e for e in self._event_history if e["event_name"] == event_name]
