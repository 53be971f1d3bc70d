"""
Booking Link Contract.

Defines the record shapes shared by the booking-link subsystem, the
conversation layer and the HTTP surface. Pure schema definition only.

All records are plain JSON-serializable dicts (timestamps are ISO-8601
UTC strings) so a persistent KeyValueStore backend can hold them as-is.

CRITICAL INVARIANTS (enforced by the agents, described here):
- At most one ACTIVE BookingLink per contact_key
- usage_count never exceeds max_usage (always 1)
- state never returns to ACTIVE once it has left it
- deactivated_at is set if and only if state != ACTIVE
- lead_snapshot is frozen at issuance
"""

from enum import Enum
from typing import List, Optional, TypedDict


# =============================================================================
# STATES & EVENTS
# =============================================================================

class LinkState(str, Enum):
    """Stored lifecycle state of a booking link.

    Purged is not a stored state: a purged record is simply gone.
    """

    ACTIVE = "active"
    USED = "used"
    EXPIRED = "expired"


class BookingEvent(str, Enum):
    """Events published on the MessageBus by the booking agents."""

    LINK_ISSUED = "booking.link.issued"
    LINK_REUSED = "booking.link.reused"
    LINK_EXPIRED = "booking.link.expired"
    LINK_DEACTIVATED = "booking.link.deactivated"
    BOOKING_COMPLETED = "booking.completed"
    LINKS_PURGED = "booking.links.purged"


class WebhookOutcome(str, Enum):
    """Result of processing one inbound scheduling-provider event."""

    PROCESSED = "processed"        # Active -> Used, history appended
    DUPLICATE = "duplicate"        # link already Used/Expired, no-op
    UNKNOWN_LINK = "unknown_link"  # booking_id not in store (purged or foreign)
    MALFORMED = "malformed"        # no booking_id in tracking metadata
    IGNORED = "ignored"            # not a booking-completed event


# Provider event type that signals a completed booking
BOOKING_COMPLETED_EVENT = "invitee.created"


# =============================================================================
# LEAD SNAPSHOT
# =============================================================================

class LeadSnapshot(TypedDict, total=False):
    """Lead contact fields copied into a link at issuance."""
    name: str
    email: str
    phone: str     # required; normalized into contact_key
    country: str
    service: str


# =============================================================================
# BOOKING LINK
# =============================================================================

class BookingLinkRecord(TypedDict, total=False):
    """
    The central booking-link entity as stored under `link:<booking_id>`.

    Example:
        {
            "booking_id": "bk_3f9a...",
            "contact_key": "+15551234567",
            "lead_snapshot": {"name": "Ana", "phone": "+15551234567"},
            "state": "active",
            "url": "https://calendly.com/...?booking_id=bk_3f9a...",
            "created_at": "2026-10-18T10:00:00+00:00",
            "expires_at": "2026-10-19T10:00:00+00:00",
            "deactivated_at": None,
            "usage_count": 0,
            "max_usage": 1,
            "access_count": 0,
        }
    """
    booking_id: str
    contact_key: str
    lead_snapshot: LeadSnapshot
    state: str
    url: str
    minted_by: str                   # "local" | "external"
    provider_ref: Optional[str]      # provider-side link URI, if minted externally
    created_at: str
    expires_at: str
    deactivated_at: Optional[str]
    deactivation_reason: Optional[str]  # "booked" | "expired" | "manual"
    usage_count: int
    max_usage: int
    access_count: int
    last_accessed_at: Optional[str]


class BookingHistoryEntry(TypedDict, total=False):
    """Append-only record of a completed booking (`history:<contact_key>`)."""
    booking_id: str
    contact_key: str
    external_event_ref: Optional[str]
    start_time: Optional[str]
    end_time: Optional[str]
    invitee_email: Optional[str]
    invitee_name: Optional[str]
    booked_at: str


class ValidationResult(TypedDict, total=False):
    """Answer to "can this link still be used?"."""
    booking_id: str
    is_valid: bool
    can_book: bool
    reason: str
    expired: bool
    was_used: bool
    max_usage_reached: bool
    already_booked: bool


class BookingStatus(TypedDict, total=False):
    """Per-contact booking overview."""
    contact_key: str
    can_book: bool
    has_booked: bool
    active_links: int
    total_bookings: int
    history: List[BookingHistoryEntry]
    status: str  # "booked" | "has_active_links" | "can_book"


# =============================================================================
# INBOUND WEBHOOK PAYLOAD (scheduling provider)
# =============================================================================

class UtmParameters(TypedDict, total=False):
    utm_source: str
    utm_medium: str
    utm_campaign: str
    booking_id: str


class InviteeTracking(TypedDict, total=False):
    utm_parameters: UtmParameters


class Invitee(TypedDict, total=False):
    email: str
    name: str
    tracking: InviteeTracking


class ScheduledEvent(TypedDict, total=False):
    uri: str
    start_time: str
    end_time: str


class WebhookBody(TypedDict, total=False):
    invitee: Invitee
    event: ScheduledEvent


class WebhookEvent(TypedDict, total=False):
    """
    Example:
        {
            "event": "invitee.created",
            "payload": {
                "invitee": {
                    "email": "ana@example.com",
                    "name": "Ana",
                    "tracking": {"utm_parameters": {"booking_id": "bk_3f9a..."}}
                },
                "event": {
                    "uri": "https://api.calendly.com/scheduled_events/EV1",
                    "start_time": "2026-10-20T15:00:00Z",
                    "end_time": "2026-10-20T15:30:00Z"
                }
            }
        }
    """
    event: str
    payload: WebhookBody
