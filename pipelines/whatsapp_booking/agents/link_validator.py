"""
Link Validator.

Answers "can this booking link still be used?" for a booking id, and
"what is this contact's booking situation?" for a phone number.

Check order (first match wins):
    1. not found                 -> reason "not found"
    2. state == USED             -> was_used
    3. expired (derived)         -> expired
    4. usage_count >= max_usage  -> max_usage_reached
    5. contact has booked before -> already_booked
    6. otherwise                 -> valid, can_book

USED is checked before expiry so callers can tell "you already booked
with this link" apart from "this link timed out".

Expiry is derived from expires_at at read time. A link past its expiry
that is still stored as ACTIVE is reported as expired and, as a side
effect, moved to EXPIRED (lazy expiry; no timers or sweeps involved).
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.contracts.booking import (
    BookingEvent,
    BookingLinkRecord,
    BookingStatus,
    LinkState,
    ValidationResult,
)
from core.infrastructure import MessageBus
from core.logger import get_logger
from pipelines.core.base_agent import BaseAgent
from pipelines.whatsapp_booking.errors import LinkNotFoundError
from pipelines.whatsapp_booking.link_store import LinkStore
from pipelines.whatsapp_booking.utils.helpers import (
    normalize_contact_key,
    parse_iso,
    to_iso,
    utc_now,
)

logger = get_logger(__name__)

REASON_OK = "OK"
REASON_NOT_FOUND = "not found"
REASON_USED = "already used"
REASON_EXPIRED = "expired"
REASON_MAX_USAGE = "max usage reached"
REASON_ALREADY_BOOKED = "already booked"


def _result(booking_id: str, reason: str, **flags: bool) -> ValidationResult:
    valid = reason == REASON_OK
    result = ValidationResult(
        booking_id=booking_id,
        is_valid=valid,
        can_book=valid,
        reason=reason,
        expired=False,
        was_used=False,
        max_usage_reached=False,
        already_booked=False,
    )
    result.update(flags)  # type: ignore[typeddict-item]
    return result


def is_past_expiry(record: BookingLinkRecord, now: datetime) -> bool:
    """True when `now` is strictly after the link's expires_at."""
    expires_at = parse_iso(record.get("expires_at"))
    return expires_at is not None and now > expires_at


class LinkValidator(BaseAgent):
    """
    Read-mostly checks over the link store.

    The only writes it performs are the lazy ACTIVE -> EXPIRED transition
    and access counting; both are compare-and-set and safe to race.

    Contract:
        Input: booking_id
        Output: validation (ValidationResult)
    """

    def __init__(
        self,
        link_store: LinkStore,
        message_bus: MessageBus | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(name="LinkValidator")
        self.link_store = link_store
        self.message_bus = message_bus or MessageBus()
        self._clock = clock

    def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        booking_id = input_data.get("booking_id")
        if not booking_id:
            raise ValueError("LinkValidator requires 'booking_id'")
        return {"validation": self.validate(booking_id)}

    # =========================================================================
    # LINK VALIDATION
    # =========================================================================

    def validate(self, booking_id: str) -> ValidationResult:
        """
        Validate a booking link.

        Args:
            booking_id: Identifier embedded in the booking URL.

        Returns:
            ValidationResult with is_valid/can_book and the failing reason.
        """
        record = self.link_store.get_link(booking_id)
        if record is None:
            return _result(booking_id, REASON_NOT_FOUND)

        state = record.get("state")
        if state == LinkState.USED.value:
            return _result(booking_id, REASON_USED, was_used=True)

        if state == LinkState.EXPIRED.value:
            return _result(booking_id, REASON_EXPIRED, expired=True)

        if is_past_expiry(record, self._clock()):
            self.expire(record)
            return _result(booking_id, REASON_EXPIRED, expired=True)

        if record.get("usage_count", 0) >= record.get("max_usage", 1):
            return _result(booking_id, REASON_MAX_USAGE, max_usage_reached=True)

        if self.link_store.has_booked(record["contact_key"]):
            return _result(booking_id, REASON_ALREADY_BOOKED, already_booked=True)

        return _result(booking_id, REASON_OK)

    def expire(self, record: BookingLinkRecord) -> Optional[BookingLinkRecord]:
        """
        Lazily move an ACTIVE link that is past expiry to EXPIRED.

        Losing the CAS means another thread already moved it (to USED or
        EXPIRED); that outcome is accepted as-is.

        Returns:
            The expired record, or None if nothing was changed.
        """
        if record.get("state") != LinkState.ACTIVE.value:
            return None

        now = self._clock()
        expired = self.link_store.transition(
            record,
            LinkState.EXPIRED,
            deactivated_at=to_iso(now),
            deactivation_reason="expired",
        )
        if expired is None:
            return None

        self.link_store.release_active(expired["contact_key"], expired["booking_id"])
        logger.info(f"Booking link {expired['booking_id']} expired (detected on validation)")
        self.message_bus.publish(BookingEvent.LINK_EXPIRED.value, {
            "booking_id": expired["booking_id"],
            "contact_key": expired["contact_key"],
            "timestamp": to_iso(now),
        })
        return expired

    def get_link(self, booking_id: str) -> BookingLinkRecord:
        """
        Fetch a link record.

        Raises:
            LinkNotFoundError: If no such link is stored.
        """
        record = self.link_store.get_link(booking_id)
        if record is None:
            raise LinkNotFoundError(booking_id)
        return record

    def track_access(self, booking_id: str) -> BookingLinkRecord:
        """
        Count a dereference of the booking URL.

        Access is not booking: the state is left untouched.

        Raises:
            LinkNotFoundError: If no such link is stored.
        """
        while True:
            record = self.get_link(booking_id)
            updated = self.link_store.update_link(
                record,
                access_count=record.get("access_count", 0) + 1,
                last_accessed_at=to_iso(self._clock()),
            )
            if updated is not None:
                logger.debug(f"Access #{updated['access_count']} on {booking_id}")
                return updated

    # =========================================================================
    # CONTACT QUERIES
    # =========================================================================

    def active_links_for(self, phone: str) -> List[BookingLinkRecord]:
        """Links for this contact that are ACTIVE and not past expiry."""
        contact_key = normalize_contact_key(phone)
        now = self._clock()
        return [
            r for r in self.link_store.links_for_contact(contact_key)
            if r.get("state") == LinkState.ACTIVE.value and not is_past_expiry(r, now)
        ]

    def booking_status(self, phone: str) -> BookingStatus:
        """
        Booking overview for a contact.

        Returns:
            BookingStatus; status is "booked", "has_active_links" or "can_book".
        """
        contact_key = normalize_contact_key(phone)
        history = self.link_store.history_for(contact_key)
        has_booked = bool(history)
        active = self.active_links_for(contact_key)

        if has_booked:
            status = "booked"
        elif active:
            status = "has_active_links"
        else:
            status = "can_book"

        return BookingStatus(
            contact_key=contact_key,
            can_book=not has_booked and not active,
            has_booked=has_booked,
            active_links=len(active),
            total_bookings=len(history),
            history=history,
            status=status,
        )
