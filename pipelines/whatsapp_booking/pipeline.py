"""WhatsApp booking assistant construction.

Wires the booking core (link store, issuer, validator, webhook processor,
cleanup sweeper/scheduler) and the conversation pipeline around one shared
StateStore and MessageBus.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from core.infrastructure import MessageBus, StateStore
from core.llm_client import LLMClient
from core.logger import get_logger
from pipelines.core.runner import PipelineRunner
from pipelines.whatsapp_booking.agents.cleanup_sweeper import CleanupSweeper
from pipelines.whatsapp_booking.agents.conversation_agent import ConversationAgent
from pipelines.whatsapp_booking.agents.lead_extraction_agent import LeadExtractionAgent
from pipelines.whatsapp_booking.agents.link_issuer import LinkIssuer
from pipelines.whatsapp_booking.agents.link_minting import build_minter
from pipelines.whatsapp_booking.agents.link_validator import LinkValidator
from pipelines.whatsapp_booking.agents.webhook_processor import WebhookEventProcessor
from pipelines.whatsapp_booking.agents.whatsapp_reply_agent import (
    WhatsAppReplyAgent,
    WhatsAppSender,
    build_sender,
)
from pipelines.whatsapp_booking.config import DEFAULT_SETTINGS, SERVICE_NAME
from pipelines.whatsapp_booking.lead_store import InMemoryLeadStore, LeadStore
from pipelines.whatsapp_booking.link_store import LinkStore
from pipelines.whatsapp_booking.scheduler import CleanupScheduler
from pipelines.whatsapp_booking.utils.helpers import utc_now

logger = get_logger(__name__)

__all__ = [
    "BookingServices",
    "build_services",
    "build_message_pipeline",
    "PIPELINE_NAME",
]

PIPELINE_NAME = f"{SERVICE_NAME}_MESSAGES"


class BookingServices:
    """
    Container for the wired service graph.

    Attributes:
        settings: Resolved settings dict
        state_store / message_bus: Shared infrastructure
        link_store, lead_store: Storage facades
        validator, issuer, webhook_processor, sweeper: Booking core
        scheduler: Periodic cleanup driver (not started)
        sender: WhatsApp sender used for replies
        llm: LLM client, or None in mock mode
    """

    def __init__(
        self,
        settings: Dict[str, Any],
        state_store: StateStore,
        message_bus: MessageBus,
        link_store: LinkStore,
        lead_store: LeadStore,
        validator: LinkValidator,
        issuer: LinkIssuer,
        webhook_processor: WebhookEventProcessor,
        sweeper: CleanupSweeper,
        scheduler: CleanupScheduler,
        sender: WhatsAppSender,
        llm: Optional[LLMClient] = None,
    ) -> None:
        self.settings = settings
        self.state_store = state_store
        self.message_bus = message_bus
        self.link_store = link_store
        self.lead_store = lead_store
        self.validator = validator
        self.issuer = issuer
        self.webhook_processor = webhook_processor
        self.sweeper = sweeper
        self.scheduler = scheduler
        self.sender = sender
        self.llm = llm


def _build_llm(settings: Dict[str, Any]) -> Optional[LLMClient]:
    """LLM client unless mock mode is on or no key is configured."""
    if settings.get("mock_llm", True):
        return None
    try:
        return LLMClient.from_env()
    except ValueError as e:
        logger.warning(f"LLM disabled: {e}")
        return None


def build_services(
    settings: Optional[Dict[str, Any]] = None,
    state_store: StateStore | None = None,
    message_bus: MessageBus | None = None,
    sender: WhatsAppSender | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> BookingServices:
    """
    Build the full service graph.

    Args:
        settings: Resolved settings (see config.load_booking_settings).
            Missing keys take DEFAULT_SETTINGS values.
        state_store: Shared store (new in-memory store if None).
        message_bus: Shared bus (new bus if None).
        sender: WhatsApp sender override (tests).
        clock: Time source for every component.

    Returns:
        BookingServices with the scheduler built but not started.
    """
    resolved = {**DEFAULT_SETTINGS, **(settings or {})}
    store = state_store or StateStore()
    bus = message_bus or MessageBus()

    link_store = LinkStore(store)
    lead_store = InMemoryLeadStore(store, clock=clock)
    validator = LinkValidator(link_store, bus, clock=clock)
    issuer = LinkIssuer(
        link_store,
        validator=validator,
        minter=build_minter(resolved),
        message_bus=bus,
        ttl_hours=float(resolved["link_ttl_hours"]),
        clock=clock,
    )
    webhook_processor = WebhookEventProcessor(link_store, lead_store, bus, clock=clock)
    sweeper = CleanupSweeper(
        link_store,
        bus,
        retention_hours=float(resolved["retention_hours"]),
        history_retention_days=resolved.get("history_retention_days"),
        clock=clock,
    )
    scheduler = CleanupScheduler(sweeper, interval_hours=float(resolved["sweep_interval_hours"]))

    logger.info(
        f"{SERVICE_NAME} services built "
        f"(ttl={resolved['link_ttl_hours']}h, retention={resolved['retention_hours']}h, "
        f"sweep_every={resolved['sweep_interval_hours']}h)"
    )
    return BookingServices(
        settings=resolved,
        state_store=store,
        message_bus=bus,
        link_store=link_store,
        lead_store=lead_store,
        validator=validator,
        issuer=issuer,
        webhook_processor=webhook_processor,
        sweeper=sweeper,
        scheduler=scheduler,
        sender=sender or build_sender(resolved),
        llm=_build_llm(resolved),
    )


def build_message_pipeline(services: BookingServices) -> PipelineRunner:
    """
    Build the inbound message pipeline.

    Pipeline flow:
        Input (message: {from, text})
        ┌─────────────────────────────────────────────┐
        │  LeadExtractionAgent                        │
        │  → contact_key, analysis                    │
        ├─────────────────────────────────────────────┤
        │  ConversationAgent                          │
        │  → reply, stage, booking_link               │
        ├─────────────────────────────────────────────┤
        │  WhatsAppReplyAgent                         │
        │  → delivered                                │
        └─────────────────────────────────────────────┘
    """
    return PipelineRunner(
        name=PIPELINE_NAME,
        agents=[
            LeadExtractionAgent(llm=services.llm),
            ConversationAgent(
                lead_store=services.lead_store,
                issuer=services.issuer,
                validator=services.validator,
                company_name=services.settings.get("company_name", "Our Team"),
                public_base_url=services.settings.get("public_base_url"),
            ),
            WhatsAppReplyAgent(sender=services.sender),
        ],
    )
