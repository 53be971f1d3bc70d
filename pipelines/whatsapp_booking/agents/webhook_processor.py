"""
Webhook Event Processor.

Consumes "booking completed" notifications from the scheduling provider
and retires the booking link that produced them.

Delivery is at-least-once, so every path here is idempotent:

    event type != invitee.created  -> IGNORED
    no tracking booking_id         -> MALFORMED     (logged, dropped)
    booking_id not in store        -> UNKNOWN_LINK  (purged or foreign link)
    link not ACTIVE                -> DUPLICATE     (no second history entry)
    link ACTIVE                    -> PROCESSED     (ACTIVE -> USED, history
                                                     appended, lead notified)

CRITICAL INVARIANTS:
- The ACTIVE -> USED transition, the history append and the release of
  the contact's active slot happen in one store-locked section, so two
  racing deliveries produce exactly one BookingHistoryEntry
- Nothing here raises into the HTTP layer for a well-formed request;
  the provider must not retry events we cannot correlate
"""

from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from core.contracts.booking import (
    BOOKING_COMPLETED_EVENT,
    BookingEvent,
    BookingHistoryEntry,
    LinkState,
    WebhookOutcome,
)
from core.infrastructure import MessageBus
from core.logger import get_logger
from pipelines.core.base_agent import BaseAgent
from pipelines.whatsapp_booking.errors import MalformedWebhookError
from pipelines.whatsapp_booking.lead_store import LeadStore
from pipelines.whatsapp_booking.link_store import LinkStore
from pipelines.whatsapp_booking.utils.helpers import to_iso, utc_now

logger = get_logger(__name__)


def extract_booking_id(event: Mapping[str, Any]) -> str:
    """
    Pull the issuing booking id out of the provider's tracking metadata.

    Path: payload.invitee.tracking.utm_parameters.booking_id

    Raises:
        MalformedWebhookError: If any level is missing or the id is empty.
    """
    try:
        booking_id = event["payload"]["invitee"]["tracking"]["utm_parameters"]["booking_id"]
    except (KeyError, TypeError) as e:
        raise MalformedWebhookError("Webhook payload has no tracking booking_id") from e

    if not booking_id or not isinstance(booking_id, str):
        raise MalformedWebhookError("Webhook tracking booking_id is empty")
    return booking_id


class WebhookEventProcessor(BaseAgent):
    """
    Applies provider booking events to the link store.

    Contract:
        Input: webhook_event (WebhookEvent)
        Output: webhook_outcome (WebhookOutcome value)

    Attributes:
        link_store: Store holding links and booking history
        lead_store: Collaborator told when a contact has booked
        message_bus: Receives BOOKING_COMPLETED / LINK_DEACTIVATED events
    """

    def __init__(
        self,
        link_store: LinkStore,
        lead_store: LeadStore | None = None,
        message_bus: MessageBus | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(name="WebhookEventProcessor")
        self.link_store = link_store
        self.lead_store = lead_store
        self.message_bus = message_bus or MessageBus()
        self._clock = clock

    def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        outcome = self.process_booking_completed(input_data.get("webhook_event") or {})
        return {"webhook_outcome": outcome.value}

    def process_booking_completed(self, event: Mapping[str, Any]) -> WebhookOutcome:
        """
        Process one provider event.

        Args:
            event: Parsed webhook body.

        Returns:
            What happened (see module docstring).
        """
        event_type = event.get("event") if isinstance(event, Mapping) else None
        if event_type != BOOKING_COMPLETED_EVENT:
            logger.debug(f"Ignoring provider event type {event_type!r}")
            return WebhookOutcome.IGNORED

        try:
            booking_id = extract_booking_id(event)
        except MalformedWebhookError as e:
            logger.warning(f"Dropping booking event: {e}")
            return WebhookOutcome.MALFORMED

        body = event["payload"]
        invitee = body["invitee"]
        scheduled = body.get("event")
        if not isinstance(scheduled, Mapping):
            scheduled = {}
        now = self._clock()

        entry: Optional[BookingHistoryEntry] = None
        with self.link_store.locked():
            record = self.link_store.get_link(booking_id)
            if record is None:
                outcome = WebhookOutcome.UNKNOWN_LINK
            elif record.get("state") != LinkState.ACTIVE.value:
                outcome = WebhookOutcome.DUPLICATE
            else:
                used = self.link_store.transition(
                    record,
                    LinkState.USED,
                    usage_count=record.get("usage_count", 0) + 1,
                    deactivated_at=to_iso(now),
                    deactivation_reason="booked",
                )
                if used is None:
                    outcome = WebhookOutcome.DUPLICATE
                else:
                    entry = BookingHistoryEntry(
                        booking_id=booking_id,
                        contact_key=used["contact_key"],
                        external_event_ref=scheduled.get("uri"),
                        start_time=scheduled.get("start_time"),
                        end_time=scheduled.get("end_time"),
                        invitee_email=invitee.get("email"),
                        invitee_name=invitee.get("name"),
                        booked_at=to_iso(now),
                    )
                    self.link_store.append_history(entry)
                    self.link_store.release_active(used["contact_key"], booking_id)
                    outcome = WebhookOutcome.PROCESSED

        if outcome == WebhookOutcome.UNKNOWN_LINK:
            logger.warning(
                f"Booking event for unknown link {booking_id} "
                "(purged, or not issued by this service)"
            )
            return outcome

        if outcome == WebhookOutcome.DUPLICATE:
            logger.info(f"Duplicate booking event for {booking_id} ignored")
            return outcome

        logger.info(
            f"Booking completed via {booking_id} for {entry['contact_key']} "
            f"(event={entry.get('external_event_ref')})"
        )
        self._notify_booked(entry)
        return outcome

    def _notify_booked(self, entry: BookingHistoryEntry) -> None:
        """Tell the lead store and bus subscribers; failures are logged only."""
        if self.lead_store is not None:
            try:
                self.lead_store.mark_booked(entry["contact_key"], {
                    "booking_id": entry["booking_id"],
                    "external_event_ref": entry.get("external_event_ref"),
                    "booked_at": entry["booked_at"],
                })
            except Exception as e:
                logger.error(f"Failed to update lead {entry['contact_key']} after booking: {e}")

        self.message_bus.publish(BookingEvent.BOOKING_COMPLETED.value, dict(entry))

    def deactivate(self, booking_id: str) -> bool:
        """
        Manually retire an ACTIVE link (admin operation).

        Returns:
            True if the link moved ACTIVE -> EXPIRED, False if it was
            missing or already inactive.
        """
        now = self._clock()
        with self.link_store.locked():
            record = self.link_store.get_link(booking_id)
            if record is None or record.get("state") != LinkState.ACTIVE.value:
                return False
            expired = self.link_store.transition(
                record,
                LinkState.EXPIRED,
                deactivated_at=to_iso(now),
                deactivation_reason="manual",
            )
            if expired is None:
                return False
            self.link_store.release_active(expired["contact_key"], booking_id)

        logger.info(f"Booking link {booking_id} deactivated manually")
        self.message_bus.publish(BookingEvent.LINK_DEACTIVATED.value, {
            "booking_id": booking_id,
            "contact_key": expired["contact_key"],
            "timestamp": to_iso(now),
        })
        return True
