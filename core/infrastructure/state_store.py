"""In-memory state store for booking and lead state.

This module provides a lock-guarded key-value state store with:
- get/set/delete operations
- append for list values
- compare_and_set for atomic single-key transitions
- locked() for composite multi-key updates
- scan(prefix) for sweeps and per-contact lookups

Values are deep-copied on the way in and out, so callers can only change
stored state through the store's own operations.

Current implementation is an in-memory dict behind an RLock.
A persistent backend (Redis, Postgres) can be substituted as long as it
satisfies the KeyValueStore protocol.
"""

import copy
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Protocol, Tuple

from core.logger import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Backend interface the booking components depend on."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> bool: ...

    def exists(self, key: str) -> bool: ...

    def append(self, key: str, value: Any) -> int: ...

    def compare_and_set(self, key: str, expected: Any, new_value: Any) -> bool: ...

    def scan(self, prefix: str = "") -> List[Tuple[str, Any]]: ...

    def locked(self) -> Any: ...


class StateStore:
    """
    Thread-safe in-memory key-value state store.

    Supports:
    - Simple get/set operations
    - List append operations
    - Compare-and-set for atomic updates
    - An exclusive section for read-check-then-write sequences that
      span several keys

    Usage:
        store = StateStore()
        store.set("link:bk_123", {"state": "active"})
        store.compare_and_set("link:bk_123", {"state": "active"}, {"state": "used"})

        with store.locked():
            if store.get("active:+100") is None:
                store.set("active:+100", "bk_123")
    """

    def __init__(self) -> None:
        """Initialize empty state store."""
        self._data: Dict[str, Any] = {}
        self._lock = threading.RLock()
        logger.debug("StateStore initialized")

    @contextmanager
    def locked(self) -> Iterator["StateStore"]:
        """
        Hold the store lock for a composite update.

        The lock is re-entrant: store operations called inside the block
        do not deadlock. Never perform network I/O while holding it.
        """
        with self._lock:
            yield self

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a copy of the value for a key.

        Args:
            key: State key to retrieve
            default: Value to return if key not found

        Returns:
            Stored value (copied) or default
        """
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        """
        Set value for a key.

        Args:
            key: State key to set
            value: Value to store (copied)
        """
        with self._lock:
            self._data[key] = copy.deepcopy(value)
        logger.debug(f"State set: {key}")

    def delete(self, key: str) -> bool:
        """
        Delete a key from the store.

        Args:
            key: State key to delete

        Returns:
            True if key existed and was deleted, False otherwise
        """
        with self._lock:
            if key not in self._data:
                return False
            del self._data[key]
        logger.debug(f"State deleted: {key}")
        return True

    def exists(self, key: str) -> bool:
        """Check if a key exists."""
        with self._lock:
            return key in self._data

    def append(self, key: str, value: Any) -> int:
        """
        Append value to a list stored at key.

        Creates list if key doesn't exist.

        Args:
            key: State key for list
            value: Value to append (copied)

        Returns:
            New length of list

        Raises:
            TypeError: If existing value is not a list
        """
        with self._lock:
            if key not in self._data:
                self._data[key] = []

            if not isinstance(self._data[key], list):
                raise TypeError(f"Cannot append to non-list value at key '{key}'")

            self._data[key].append(copy.deepcopy(value))
            length = len(self._data[key])
        logger.debug(f"State appended to: {key}")
        return length

    def compare_and_set(
        self,
        key: str,
        expected: Any,
        new_value: Any,
    ) -> bool:
        """
        Atomically set value only if current value matches expected.

        Two racing writers that read the same value can never both win:
        the loser observes the winner's write and gets False.

        Args:
            key: State key to update
            expected: Expected current value (or None if key should not exist)
            new_value: New value to set if expected matches

        Returns:
            True if update succeeded, False if current value != expected
        """
        with self._lock:
            current = self._data.get(key)

            if current != expected:
                logger.debug(f"CAS failed for {key}")
                return False

            self._data[key] = copy.deepcopy(new_value)
        logger.debug(f"CAS succeeded for {key}")
        return True

    def scan(self, prefix: str = "") -> List[Tuple[str, Any]]:
        """
        Snapshot all (key, value) pairs whose key starts with prefix.

        Args:
            prefix: Key prefix filter ("" matches everything)

        Returns:
            List of (key, copied value) tuples
        """
        with self._lock:
            return [
                (k, copy.deepcopy(v))
                for k, v in self._data.items()
                if k.startswith(prefix)
            ]
