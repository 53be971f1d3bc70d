"""Infrastructure components shared by the booking subsystem.

This module provides swappable infrastructure interfaces:
- MessageBus: Publish/subscribe lifecycle events
- StateStore: Lock-guarded key-value state (KeyValueStore protocol)

Both are passed explicitly into the components that use them; there are
no process-wide instances.
"""

from core.infrastructure.message_bus import MessageBus
from core.infrastructure.state_store import KeyValueStore, StateStore

__all__ = [
    "MessageBus",
    "KeyValueStore",
    "StateStore",
]
