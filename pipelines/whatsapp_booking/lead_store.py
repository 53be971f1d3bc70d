"""Lead storage collaborator.

Conversation state for each lead, keyed by contact key. The booking core
only ever calls `mark_booked`; the conversation agent reads and writes
the rest.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from core.infrastructure import KeyValueStore, StateStore
from core.logger import get_logger
from pipelines.whatsapp_booking.utils.helpers import to_iso, utc_now

logger = get_logger(__name__)

LEAD_PREFIX = "lead:"


class ConversationStage(str, Enum):
    """Stages a lead moves through in the chat."""

    INITIAL = "initial"
    COLLECTING_INFO = "collecting_info"
    SCHEDULING = "scheduling"
    COMPLETED = "completed"


class LeadStore(Protocol):
    """Protocol for lead storage implementations."""

    def get(self, contact_key: str) -> Optional[dict[str, Any]]:
        ...

    def upsert(self, contact_key: str, changes: dict[str, Any]) -> dict[str, Any]:
        ...

    def mark_booked(self, contact_key: str, booking: dict[str, Any]) -> dict[str, Any]:
        ...


class InMemoryLeadStore:
    """Lead store backed by a StateStore (`lead:<contact_key>`)."""

    def __init__(
        self,
        state_store: KeyValueStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.state_store = state_store or StateStore()
        self._clock = clock

    def get(self, contact_key: str) -> Optional[dict[str, Any]]:
        return self.state_store.get(f"{LEAD_PREFIX}{contact_key}")

    def upsert(self, contact_key: str, changes: dict[str, Any]) -> dict[str, Any]:
        """
        Create or update a lead.

        `data` is merged key by key so partial extractions accumulate;
        empty values never overwrite collected ones.
        """
        key = f"{LEAD_PREFIX}{contact_key}"
        with self.state_store.locked():
            lead = self.state_store.get(key) or {
                "contact_key": contact_key,
                "stage": ConversationStage.INITIAL.value,
                "data": {"phone": contact_key},
                "has_booked": False,
                "created_at": to_iso(self._clock()),
            }
            for field, value in changes.items():
                if field == "data":
                    lead["data"].update({k: v for k, v in value.items() if v})
                else:
                    lead[field] = value
            lead["updated_at"] = to_iso(self._clock())
            self.state_store.set(key, lead)
        return lead

    def mark_booked(self, contact_key: str, booking: dict[str, Any]) -> dict[str, Any]:
        """
        Record that this contact completed a booking.

        Args:
            contact_key: Normalized phone number
            booking: {booking_id, external_event_ref, booked_at}

        Returns:
            The updated lead.
        """
        lead = self.upsert(contact_key, {
            "has_booked": True,
            "stage": ConversationStage.COMPLETED.value,
            "booking": dict(booking),
        })
        logger.info(f"Lead {contact_key} marked as booked ({booking.get('booking_id')})")
        return lead
