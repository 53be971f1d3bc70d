"""
Webhook signature verification.

The scheduling provider signs each delivery with HMAC-SHA256 over the raw
request body and sends it as:

    Calendly-Webhook-Signature: sha256=<hex_digest>
"""

import hashlib
import hmac

from core.logger import get_logger
from pipelines.whatsapp_booking.errors import WebhookSignatureError

logger = get_logger(__name__)

SIGNATURE_HEADER = "Calendly-Webhook-Signature"


def compute_signature(secret: str, payload: bytes) -> str:
    """Header value the provider would send for this payload."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(secret: str, payload: bytes, signature_header: str | None) -> None:
    """
    Check a delivery's signature in constant time.

    Raises:
        WebhookSignatureError: If the header is missing or does not match.
    """
    if not signature_header:
        logger.warning("Booking webhook missing signature header")
        raise WebhookSignatureError("Missing webhook signature")

    if not hmac.compare_digest(compute_signature(secret, payload), signature_header.strip()):
        logger.warning("Booking webhook signature mismatch")
        raise WebhookSignatureError("Invalid webhook signature")
