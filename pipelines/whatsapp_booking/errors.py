"""Error taxonomy for the booking-link subsystem.

Only AlreadyBookedError and LinkNotFoundError are meant to reach the
person on the other end of the chat. The rest are absorbed where they
are raised (provider fallback, webhook drop).
"""

from typing import Optional


class BookingError(Exception):
    """Base class for booking-link errors."""


class AlreadyBookedError(BookingError):
    """The contact already has a completed booking. Not retried."""

    def __init__(self, contact_key: str) -> None:
        super().__init__(f"Contact {contact_key} has already booked an appointment")
        self.contact_key = contact_key


class HasActiveLinkError(BookingError):
    """
    The contact already holds an active link.

    Issuance resolves this case by returning the existing link, so the
    issuer never raises it; callers that want strict creation can.
    """

    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Active booking link already exists: {booking_id}")
        self.booking_id = booking_id


class LinkNotFoundError(BookingError):
    """No link with this booking id (bad id, or purged after expiry/use)."""

    def __init__(self, booking_id: str) -> None:
        super().__init__(f"Booking link not found: {booking_id}")
        self.booking_id = booking_id


class ExternalProviderError(BookingError):
    """The scheduling provider API could not mint a link."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedWebhookError(BookingError):
    """Inbound provider event lacks the tracking metadata needed to correlate it."""


class WebhookSignatureError(BookingError):
    """Inbound provider event failed signature verification."""
