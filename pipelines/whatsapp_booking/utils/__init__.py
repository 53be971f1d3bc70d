"""Utility functions for the WhatsApp booking assistant."""

from pipelines.whatsapp_booking.utils.helpers import (
    build_booking_url,
    extract_booking_id_from_url,
    new_booking_id,
    normalize_contact_key,
    parse_iso,
    retrying_session,
    to_iso,
    tracked_redirect_url,
    utc_now,
)

__all__ = [
    "build_booking_url",
    "extract_booking_id_from_url",
    "new_booking_id",
    "normalize_contact_key",
    "parse_iso",
    "retrying_session",
    "to_iso",
    "tracked_redirect_url",
    "utc_now",
]
