"""WhatsApp lead assistant with one-time-use booking links."""

from pipelines.whatsapp_booking.pipeline import (
    PIPELINE_NAME,
    BookingServices,
    build_message_pipeline,
    build_services,
)
from pipelines.whatsapp_booking.config import load_booking_settings

__all__ = [
    "BookingServices",
    "PIPELINE_NAME",
    "build_message_pipeline",
    "build_services",
    "load_booking_settings",
]
