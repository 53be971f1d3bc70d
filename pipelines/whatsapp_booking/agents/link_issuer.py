"""
Link Issuer.

Creates one-time-use booking links for leads that reached the scheduling
stage of the conversation.

Issuance rules (per contact key):
    ┌──────────────────────────────┬───────────────────────────────────┐
    │ Situation                    │ Result                            │
    ├──────────────────────────────┼───────────────────────────────────┤
    │ contact has booking history  │ AlreadyBookedError                │
    │ contact holds a usable link  │ that same link (idempotent reuse) │
    │ index points to stale link   │ index released, new link issued   │
    │ nothing on record            │ new ACTIVE link                   │
    └──────────────────────────────┴───────────────────────────────────┘

CRITICAL INVARIANTS:
- At most one ACTIVE link per contact, even under concurrent requests:
  the final check and the write happen inside one store-locked section
- Provider minting (network I/O) happens outside the lock; a minted link
  that loses the race is discarded and the winner's link is returned
- The lead snapshot is copied at issuance and never changed afterwards
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from core.contracts.booking import (
    BookingEvent,
    BookingLinkRecord,
    LeadSnapshot,
    LinkState,
)
from core.infrastructure import MessageBus
from core.logger import get_logger
from pipelines.core.base_agent import BaseAgent
from pipelines.whatsapp_booking.agents.link_minting import (
    LinkMintingStrategy,
    LocalOnlyMinter,
)
from pipelines.whatsapp_booking.agents.link_validator import LinkValidator, is_past_expiry
from pipelines.whatsapp_booking.config import LINK_TTL_HOURS, MAX_USAGE
from pipelines.whatsapp_booking.errors import AlreadyBookedError
from pipelines.whatsapp_booking.link_store import LinkStore
from pipelines.whatsapp_booking.utils.helpers import (
    new_booking_id,
    normalize_contact_key,
    to_iso,
    utc_now,
)

logger = get_logger(__name__)

SNAPSHOT_FIELDS = ("name", "email", "phone", "country", "service")


def build_lead_snapshot(lead: Mapping[str, Any]) -> LeadSnapshot:
    """
    Copy the contact fields of a lead into a snapshot.

    The phone is normalized; other fields are copied as strings when set.

    Raises:
        ValueError: If the lead has no usable phone number.
    """
    contact_key = normalize_contact_key(lead.get("phone"))
    if not contact_key:
        raise ValueError("Lead snapshot requires a phone number")

    snapshot: Dict[str, str] = {}
    for field in SNAPSHOT_FIELDS:
        value = lead.get(field)
        if value:
            snapshot[field] = str(value).strip()
    snapshot["phone"] = contact_key
    return snapshot  # type: ignore[return-value]


class LinkIssuer(BaseAgent):
    """
    Issues booking links, reusing a contact's live link when one exists.

    Contract:
        Input: lead (dict with at least 'phone')
        Output: booking_link (BookingLinkRecord)

    Attributes:
        link_store: Store holding links, active index and history
        validator: Used for the derived-expiry check on existing links
        minter: Strategy producing the booking URL
        ttl: Lifetime of a new link
    """

    def __init__(
        self,
        link_store: LinkStore,
        validator: LinkValidator | None = None,
        minter: LinkMintingStrategy | None = None,
        message_bus: MessageBus | None = None,
        ttl_hours: float = LINK_TTL_HOURS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(name="LinkIssuer")
        self.link_store = link_store
        self.message_bus = message_bus or MessageBus()
        self.validator = validator or LinkValidator(link_store, self.message_bus, clock=clock)
        self.minter = minter or LocalOnlyMinter()
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        lead = input_data.get("lead")
        if lead is None:
            raise ValueError("LinkIssuer requires 'lead'")
        return {"booking_link": self.issue(lead)}

    def issue(self, lead: Mapping[str, Any]) -> BookingLinkRecord:
        """
        Issue (or reuse) the booking link for a lead.

        Args:
            lead: Lead contact data; must contain 'phone'.

        Returns:
            The contact's ACTIVE BookingLinkRecord.

        Raises:
            AlreadyBookedError: If the contact has ever completed a booking.
            ValueError: If the lead has no phone number.
        """
        snapshot = build_lead_snapshot(lead)
        contact_key = snapshot["phone"]

        existing = self._usable_link(contact_key)
        if existing is not None:
            return self._reuse(existing)

        booking_id = new_booking_id()
        now = self._clock()
        expires_at = now + self.ttl
        minted = self.minter.mint(snapshot, booking_id, expires_at)

        record = BookingLinkRecord(
            booking_id=booking_id,
            contact_key=contact_key,
            lead_snapshot=snapshot,
            state=LinkState.ACTIVE.value,
            url=minted["url"],
            minted_by=minted["minted_by"],
            provider_ref=minted["provider_ref"],
            created_at=to_iso(now),
            expires_at=to_iso(expires_at),
            deactivated_at=None,
            deactivation_reason=None,
            usage_count=0,
            max_usage=MAX_USAGE,
            access_count=0,
            last_accessed_at=None,
        )

        with self.link_store.locked():
            existing = self._usable_link(contact_key)
            if existing is None:
                self.link_store.put_link(record)
                if not self.link_store.reserve_active(contact_key, booking_id):
                    self.link_store.delete_link(booking_id)
                    raise RuntimeError(f"Active slot for {contact_key} taken while locked")

        if existing is not None:
            logger.debug(f"Discarding minted link {booking_id}: concurrent issuance won")
            return self._reuse(existing)

        logger.info(
            f"Booking link {booking_id} issued for {contact_key} "
            f"(minted_by={record['minted_by']}, expires_at={record['expires_at']})"
        )
        self.message_bus.publish(BookingEvent.LINK_ISSUED.value, {
            "booking_id": booking_id,
            "contact_key": contact_key,
            "url": record["url"],
            "timestamp": record["created_at"],
        })
        return record

    def _usable_link(self, contact_key: str) -> Optional[BookingLinkRecord]:
        """
        Resolve the contact's current link, cleaning up stale state.

        Raises:
            AlreadyBookedError: If booking history exists for the contact.
        """
        if self.link_store.has_booked(contact_key):
            raise AlreadyBookedError(contact_key)

        booking_id = self.link_store.active_booking_id(contact_key)
        if booking_id is None:
            return None

        record = self.link_store.get_link(booking_id)
        if record is None or record.get("state") != LinkState.ACTIVE.value:
            self.link_store.release_active(contact_key, booking_id)
            return None

        if is_past_expiry(record, self._clock()):
            # Retry until the stored record has left ACTIVE (a concurrent
            # access-count update can make the expiry CAS miss).
            while record is not None and record.get("state") == LinkState.ACTIVE.value:
                if self.validator.expire(record) is not None:
                    break
                record = self.link_store.get_link(booking_id)
            self.link_store.release_active(contact_key, booking_id)
            if self.link_store.has_booked(contact_key):
                raise AlreadyBookedError(contact_key)
            return None

        return record

    def _reuse(self, record: BookingLinkRecord) -> BookingLinkRecord:
        logger.info(f"Reusing active booking link {record['booking_id']} for {record['contact_key']}")
        self.message_bus.publish(BookingEvent.LINK_REUSED.value, {
            "booking_id": record["booking_id"],
            "contact_key": record["contact_key"],
            "timestamp": to_iso(self._clock()),
        })
        return record
