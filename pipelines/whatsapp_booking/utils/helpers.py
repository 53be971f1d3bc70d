"""Helper utilities for the WhatsApp booking assistant."""

import re
import secrets
from datetime import datetime, timezone
from typing import Any, Mapping, Optional
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pipelines.whatsapp_booking.config import (
    BOOKING_ID_PARAM,
    UTM_CAMPAIGN,
    UTM_MEDIUM,
    UTM_SOURCE,
)

BOOKING_ID_PREFIX = "bk_"


# =============================================================================
# Time
# =============================================================================

def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """
    Serialize a datetime as ISO-8601 UTC.

    Naive datetimes are taken to be UTC.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp (accepts a trailing 'Z').

    Returns:
        Aware UTC datetime, or None for empty input.
    """
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# =============================================================================
# Contact keys
# =============================================================================

def normalize_contact_key(phone: Optional[str]) -> str:
    """
    Normalize a phone number into the contact key used across the system.

    Strips a "whatsapp:" channel prefix and all formatting characters,
    keeping a single leading '+'.

    Examples:
        >>> normalize_contact_key("whatsapp:+1 (555) 123-4567")
        "+15551234567"
        >>> normalize_contact_key("555.123.4567")
        "5551234567"
        >>> normalize_contact_key(None)
        ""
    """
    if not phone:
        return ""
    raw = str(phone).strip()
    if raw.lower().startswith("whatsapp:"):
        raw = raw[len("whatsapp:"):].strip()
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return ""
    return f"+{digits}" if raw.startswith("+") else digits


# =============================================================================
# Booking identifiers & URLs
# =============================================================================

def new_booking_id() -> str:
    """Generate an unguessable booking identifier."""
    return f"{BOOKING_ID_PREFIX}{secrets.token_urlsafe(16)}"


def build_booking_url(
    base_url: str,
    lead: Mapping[str, Any],
    booking_id: str,
    expires_at: datetime,
) -> str:
    """
    Build a booking URL with pre-fill and tracking parameters.

    Existing query parameters on base_url are preserved. The booking_id
    parameter is what the provider echoes back in the webhook's tracking
    metadata.

    Args:
        base_url: Provider scheduling page (or provider-minted link).
        lead: Lead snapshot; name/email/phone are used for pre-fill.
        booking_id: Identifier of the issuing link.
        expires_at: Link expiry, advertised for display only.

    Returns:
        Full booking URL.
    """
    parsed = urlparse(base_url)
    params: list[tuple[str, str]] = []
    for key, values in parse_qs(parsed.query, keep_blank_values=True).items():
        params.extend((key, v) for v in values)

    for field in ("name", "email", "phone"):
        value = lead.get(field)
        if value:
            params.append((field, str(value)))

    params.extend([
        ("utm_source", UTM_SOURCE),
        ("utm_medium", UTM_MEDIUM),
        ("utm_campaign", UTM_CAMPAIGN),
        (BOOKING_ID_PARAM, booking_id),
        ("one_time_use", "true"),
        ("expires_at", to_iso(expires_at)),
    ])

    return urlunparse(parsed._replace(query=urlencode(params)))


def extract_booking_id_from_url(url: Optional[str]) -> Optional[str]:
    """
    Read the booking_id tracking parameter back out of a booking URL.

    Returns:
        The booking id, or None if absent.
    """
    if not url:
        return None
    values = parse_qs(urlparse(url).query).get(BOOKING_ID_PARAM)
    return values[0] if values else None


def tracked_redirect_url(public_base_url: str, booking_id: str) -> str:
    """Our own /booking/{id} URL, which records the open and then redirects."""
    return f"{public_base_url.rstrip('/')}/booking/{booking_id}"


# =============================================================================
# HTTP
# =============================================================================

def retrying_session(
    total: int = 2,
    backoff_factor: float = 0.5,
    status_forcelist: tuple[int, ...] = (429, 503),
) -> requests.Session:
    """
    requests.Session that retries throttled or unavailable responses.

    POST is retried as well, on 429/503 only: the remote side has not
    acted on the request for those statuses.
    """
    session = requests.Session()
    adapter = HTTPAdapter(
        max_retries=Retry(
            total=total,
            backoff_factor=backoff_factor,
            status_forcelist=list(status_forcelist),
            allowed_methods=["GET", "POST"],
            raise_on_status=False,
        ),
        pool_connections=10,
        pool_maxsize=10,
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session
