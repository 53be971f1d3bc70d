"""Agents for the WhatsApp booking assistant."""

from pipelines.whatsapp_booking.agents.cleanup_sweeper import CleanupSweeper
from pipelines.whatsapp_booking.agents.conversation_agent import ConversationAgent
from pipelines.whatsapp_booking.agents.lead_extraction_agent import LeadExtractionAgent
from pipelines.whatsapp_booking.agents.link_issuer import LinkIssuer
from pipelines.whatsapp_booking.agents.link_minting import (
    ExternalProviderMinter,
    LocalOnlyMinter,
    MintingMode,
    build_minter,
)
from pipelines.whatsapp_booking.agents.link_validator import LinkValidator
from pipelines.whatsapp_booking.agents.webhook_processor import WebhookEventProcessor
from pipelines.whatsapp_booking.agents.whatsapp_reply_agent import (
    MetaWhatsAppSender,
    MockWhatsAppSender,
    WhatsAppReplyAgent,
)

__all__ = [
    "CleanupSweeper",
    "ConversationAgent",
    "ExternalProviderMinter",
    "LeadExtractionAgent",
    "LinkIssuer",
    "LinkValidator",
    "LocalOnlyMinter",
    "MetaWhatsAppSender",
    "MintingMode",
    "MockWhatsAppSender",
    "WebhookEventProcessor",
    "WhatsAppReplyAgent",
    "build_minter",
]
