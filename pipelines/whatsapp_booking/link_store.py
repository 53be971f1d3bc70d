"""Booking link store: key scheme and state transitions over a KeyValueStore.

Key layout:
    link:<booking_id>       -> BookingLinkRecord
    active:<contact_key>    -> booking_id of the contact's ACTIVE link
    history:<contact_key>   -> [BookingHistoryEntry, ...] (append-only)

The store knows nothing about expiry policy or webhooks; it only keeps
the records consistent. The agents compose these primitives inside
`locked()` when a decision spans more than one key.
"""

from typing import Any, Dict, Iterator, List, Optional

from core.contracts.booking import (
    BookingHistoryEntry,
    BookingLinkRecord,
    LinkState,
)
from core.infrastructure import KeyValueStore, StateStore
from core.logger import get_logger

logger = get_logger(__name__)

LINK_PREFIX = "link:"
ACTIVE_PREFIX = "active:"
HISTORY_PREFIX = "history:"


class LinkStore:
    """
    Typed facade over the shared state store for booking links.

    Attributes:
        state_store: Backend holding links, the active index and history
    """

    def __init__(self, state_store: KeyValueStore | None = None) -> None:
        self.state_store = state_store or StateStore()

    def locked(self) -> Any:
        """Exclusive section over the whole link table."""
        return self.state_store.locked()

    # =========================================================================
    # LINK RECORDS
    # =========================================================================

    def get_link(self, booking_id: str) -> Optional[BookingLinkRecord]:
        return self.state_store.get(f"{LINK_PREFIX}{booking_id}")

    def put_link(self, record: BookingLinkRecord) -> None:
        self.state_store.set(f"{LINK_PREFIX}{record['booking_id']}", record)

    def delete_link(self, booking_id: str) -> bool:
        return self.state_store.delete(f"{LINK_PREFIX}{booking_id}")

    def transition(
        self,
        record: BookingLinkRecord,
        new_state: LinkState,
        **changes: Any,
    ) -> Optional[BookingLinkRecord]:
        """
        Move a link out of its current state with compare-and-set.

        Args:
            record: The record as last read by the caller
            new_state: Target state (never ACTIVE)
            **changes: Extra fields to write alongside the state

        Returns:
            The updated record, or None if the stored record no longer
            equals `record` (another writer got there first).

        Raises:
            ValueError: On an attempt to re-enter ACTIVE.
        """
        if new_state == LinkState.ACTIVE:
            raise ValueError("Booking links never transition back to ACTIVE")

        updated: BookingLinkRecord = {**record, **changes, "state": new_state.value}
        key = f"{LINK_PREFIX}{record['booking_id']}"
        if not self.state_store.compare_and_set(key, record, updated):
            logger.debug(f"Transition to {new_state.value} lost race for {record['booking_id']}")
            return None
        return updated

    def update_link(self, record: BookingLinkRecord, **changes: Any) -> Optional[BookingLinkRecord]:
        """CAS update of non-state fields (e.g. access counters)."""
        updated: BookingLinkRecord = {**record, **changes}
        key = f"{LINK_PREFIX}{record['booking_id']}"
        if not self.state_store.compare_and_set(key, record, updated):
            return None
        return updated

    def iter_links(self) -> Iterator[BookingLinkRecord]:
        """Snapshot iteration over every stored link."""
        for _, record in self.state_store.scan(LINK_PREFIX):
            yield record

    def links_for_contact(self, contact_key: str) -> List[BookingLinkRecord]:
        return [r for r in self.iter_links() if r.get("contact_key") == contact_key]

    # =========================================================================
    # ACTIVE INDEX
    # =========================================================================

    def active_booking_id(self, contact_key: str) -> Optional[str]:
        return self.state_store.get(f"{ACTIVE_PREFIX}{contact_key}")

    def reserve_active(self, contact_key: str, booking_id: str) -> bool:
        """Claim the contact's single active slot; False if already held."""
        return self.state_store.compare_and_set(
            f"{ACTIVE_PREFIX}{contact_key}", None, booking_id
        )

    def release_active(self, contact_key: str, booking_id: str) -> bool:
        """Free the active slot, but only if `booking_id` still holds it."""
        key = f"{ACTIVE_PREFIX}{contact_key}"
        with self.state_store.locked():
            if self.state_store.get(key) != booking_id:
                return False
            return self.state_store.delete(key)

    # =========================================================================
    # BOOKING HISTORY
    # =========================================================================

    def history_for(self, contact_key: str) -> List[BookingHistoryEntry]:
        return self.state_store.get(f"{HISTORY_PREFIX}{contact_key}", [])

    def has_booked(self, contact_key: str) -> bool:
        """The single source of truth for "has this contact ever booked"."""
        return bool(self.history_for(contact_key))

    def append_history(self, entry: BookingHistoryEntry) -> int:
        return self.state_store.append(f"{HISTORY_PREFIX}{entry['contact_key']}", entry)

    def iter_history(self) -> Iterator[tuple[str, List[BookingHistoryEntry]]]:
        for key, entries in self.state_store.scan(HISTORY_PREFIX):
            yield key[len(HISTORY_PREFIX):], entries

    def replace_history(self, contact_key: str, entries: List[BookingHistoryEntry]) -> None:
        key = f"{HISTORY_PREFIX}{contact_key}"
        if entries:
            self.state_store.set(key, entries)
        else:
            self.state_store.delete(key)

    def counts(self) -> Dict[str, int]:
        """Total / active / inactive link counts."""
        total = active = 0
        for record in self.iter_links():
            total += 1
            if record.get("state") == LinkState.ACTIVE.value:
                active += 1
        return {"total": total, "active": active, "inactive": total - active}
