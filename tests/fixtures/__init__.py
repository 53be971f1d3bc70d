"""
Fixtures package for booking tests.

Provides reusable lead and webhook payload builders.
"""

from fixtures.sample_leads import (
    make_lead,
    make_webhook_event,
    make_whatsapp_payload,
)

__all__ = [
    "make_lead",
    "make_webhook_event",
    "make_whatsapp_payload",
]
