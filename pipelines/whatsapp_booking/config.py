"""Configuration constants for the WhatsApp booking assistant."""

import os
from pathlib import Path
from typing import Any, Optional

from core.config_loader import load_settings

# Service identification
SERVICE_NAME = "WHATSAPP_LEAD_ASSISTANT"

# Booking link lifecycle
LINK_TTL_HOURS = 24
RETENTION_HOURS = 24
SWEEP_INTERVAL_HOURS = 6
MAX_USAGE = 1

# Scheduling provider
FALLBACK_BOOKING_URL = "https://calendly.com/your-team/30min"
CALENDLY_API_BASE_URL = "https://api.calendly.com"
PROVIDER_TIMEOUT_SECONDS = 5.0

# Tracking parameters appended to every booking URL
UTM_SOURCE = "whatsapp_bot"
UTM_MEDIUM = "chat"
UTM_CAMPAIGN = "lead_booking"
BOOKING_ID_PARAM = "booking_id"

# Fields a lead must provide before scheduling is offered (phone comes from sender)
REQUIRED_LEAD_FIELDS = ("name", "email", "country", "service")

DEFAULT_SETTINGS: dict[str, Any] = {
    "booking_base_url": FALLBACK_BOOKING_URL,
    "link_ttl_hours": LINK_TTL_HOURS,
    "retention_hours": RETENTION_HOURS,
    "sweep_interval_hours": SWEEP_INTERVAL_HOURS,
    "history_retention_days": None,
    "calendly_api_key": "",
    "calendly_event_type_uri": "",
    "provider_timeout_seconds": PROVIDER_TIMEOUT_SECONDS,
    "webhook_signing_key": "",
    "public_base_url": "http://localhost:8000",
    "company_name": "Our Team",
    "whatsapp_token": "",
    "whatsapp_phone_number_id": "",
    "whatsapp_verify_token": "",
    "mock_whatsapp": True,
    "mock_llm": True,
}

ENV_MAP: dict[str, str] = {
    "booking_base_url": "BOOKING_BASE_URL",
    "link_ttl_hours": "LINK_TTL_HOURS",
    "retention_hours": "RETENTION_HOURS",
    "sweep_interval_hours": "SWEEP_INTERVAL_HOURS",
    "history_retention_days": "HISTORY_RETENTION_DAYS",
    "calendly_api_key": "CALENDLY_API_KEY",
    "calendly_event_type_uri": "CALENDLY_EVENT_TYPE_URI",
    "provider_timeout_seconds": "PROVIDER_TIMEOUT_SECONDS",
    "webhook_signing_key": "CALENDLY_WEBHOOK_SIGNING_KEY",
    "public_base_url": "PUBLIC_BASE_URL",
    "company_name": "COMPANY_NAME",
    "whatsapp_token": "WHATSAPP_TOKEN",
    "whatsapp_phone_number_id": "WHATSAPP_PHONE_NUMBER_ID",
    "whatsapp_verify_token": "WHATSAPP_VERIFY_TOKEN",
    "mock_whatsapp": "MOCK_WHATSAPP",
    "mock_llm": "MOCK_LLM",
}

# Settings never echoed back in full (check-config, logs)
SECRET_KEYS = frozenset([
    "calendly_api_key",
    "webhook_signing_key",
    "whatsapp_token",
    "whatsapp_verify_token",
])


def load_booking_settings(path: Optional[str | Path] = None) -> dict[str, Any]:
    """
    Resolve booking settings (defaults < YAML < environment).

    Args:
        path: Optional YAML file. Falls back to BOOKING_CONFIG_PATH env.

    Returns:
        Settings dictionary with every DEFAULT_SETTINGS key present.
    """
    config_path = path or os.getenv("BOOKING_CONFIG_PATH") or None
    settings = load_settings(DEFAULT_SETTINGS, path=config_path, env_map=ENV_MAP)

    days = settings.get("history_retention_days")
    if days is not None and days != "":
        settings["history_retention_days"] = int(days)
    else:
        settings["history_retention_days"] = None

    return settings


def mask_secrets(settings: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of settings with secret values masked."""
    masked = dict(settings)
    for key in SECRET_KEYS:
        if masked.get(key):
            masked[key] = "****"
    return masked
