"""
Conversation Agent.

Drives a lead through the chat and hands off to the booking core once
every required field is known.

Stages:
    initial ──> collecting_info ──> scheduling ──> completed
                      ^                                │
                      └──────── service inquiry ───────┘

CRITICAL INVARIANTS:
- A previously issued link is validated before it is shown again
- AlreadyBookedError from the issuer ends the flow with an
  "already booked" reply; a second link is never offered
- The sender's phone number is the contact key; a phone typed into the
  message never replaces it
- Replies carry the /booking/{id} redirect when public_base_url is set,
  so every open is counted before the lead reaches the provider
"""

from typing import Any, Dict, List, Mapping, Optional

from core.logger import get_logger
from pipelines.core.base_agent import BaseAgent
from pipelines.whatsapp_booking.agents.link_issuer import LinkIssuer
from pipelines.whatsapp_booking.agents.link_validator import LinkValidator
from pipelines.whatsapp_booking.config import REQUIRED_LEAD_FIELDS
from pipelines.whatsapp_booking.errors import AlreadyBookedError
from pipelines.whatsapp_booking.lead_store import ConversationStage, LeadStore
from pipelines.whatsapp_booking.utils.helpers import tracked_redirect_url

logger = get_logger(__name__)

FIELD_QUESTIONS = {
    "name": "May I have your full name?",
    "email": "What's the best email address to reach you?",
    "country": "Which country are you based in?",
    "service": "Which of our services are you interested in?",
}

GREETING_TEMPLATE = "👋 Hi there! Welcome to {company}!"
BOOKING_TEMPLATE = (
    "Thanks {name}! You can pick a time for your consultation here:\n{url}\n\n"
    "This link is personal and can be used for one booking only."
)
ALREADY_BOOKED_MESSAGE = (
    "You already have a consultation booked with us. "
    "We'll be in touch before the call. Anything else I can help with?"
)
COMPLETED_MESSAGE = "Your consultation is booked. Reply with a service name if you need help with anything else."
GOODBYE_MESSAGE = "Thanks for chatting with {company}. Have a great day!"


def missing_fields(data: Mapping[str, Any]) -> List[str]:
    """Required lead fields not collected yet, in asking order."""
    return [field for field in REQUIRED_LEAD_FIELDS if not data.get(field)]


class ConversationAgent(BaseAgent):
    """
    Stage machine for one inbound message.

    Contract:
        Input: contact_key, analysis ({intent, entities})
        Output: reply (str), stage (str), booking_link (record or None)
    """

    def __init__(
        self,
        lead_store: LeadStore,
        issuer: LinkIssuer,
        validator: LinkValidator,
        company_name: str = "Our Team",
        public_base_url: Optional[str] = None,
    ) -> None:
        super().__init__(name="ConversationAgent")
        self.lead_store = lead_store
        self.issuer = issuer
        self.validator = validator
        self.company_name = company_name
        self.public_base_url = public_base_url

    def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        contact_key = input_data.get("contact_key")
        if not contact_key:
            raise ValueError("ConversationAgent requires 'contact_key'")
        analysis = input_data.get("analysis") or {}
        return self.handle(contact_key, analysis)

    def handle(self, contact_key: str, analysis: Mapping[str, Any]) -> Dict[str, Any]:
        intent = analysis.get("intent", "other")
        entities = {
            k: v for k, v in (analysis.get("entities") or {}).items()
            if k != "phone" and v
        }

        lead = self.lead_store.upsert(contact_key, {"data": entities})
        stage = lead.get("stage", ConversationStage.INITIAL.value)
        logger.debug(f"Lead {contact_key}: stage={stage}, intent={intent}, new_fields={list(entities)}")

        if stage == ConversationStage.COMPLETED.value:
            if intent != "service_inquiry":
                return self._reply(COMPLETED_MESSAGE, ConversationStage.COMPLETED)
            self.lead_store.upsert(contact_key, {"stage": ConversationStage.COLLECTING_INFO.value})
            stage = ConversationStage.COLLECTING_INFO.value

        if intent == "goodbye":
            return self._reply(GOODBYE_MESSAGE.format(company=self.company_name), ConversationStage(stage))

        missing = missing_fields(lead["data"])
        if missing:
            message = FIELD_QUESTIONS[missing[0]]
            if stage == ConversationStage.INITIAL.value:
                message = f"{GREETING_TEMPLATE.format(company=self.company_name)}\n\n{message}"
            self.lead_store.upsert(contact_key, {"stage": ConversationStage.COLLECTING_INFO.value})
            return self._reply(message, ConversationStage.COLLECTING_INFO)

        if stage != ConversationStage.SCHEDULING.value:
            self.lead_store.upsert(contact_key, {"stage": ConversationStage.SCHEDULING.value})
            logger.info(f"Lead {contact_key} has all required fields, moving to scheduling")

        return self._offer_booking(contact_key, lead)

    def _offer_booking(self, contact_key: str, lead: Mapping[str, Any]) -> Dict[str, Any]:
        """Re-present a still-valid link or issue one."""
        data = lead["data"]
        name = data.get("name", "")

        previous_id = lead.get("booking_id")
        if previous_id:
            validation = self.validator.validate(previous_id)
            if validation["is_valid"]:
                record = self.validator.get_link(previous_id)
                return self._reply(
                    BOOKING_TEMPLATE.format(name=name, url=self._link_url(record)),
                    ConversationStage.SCHEDULING,
                    record,
                )
            if validation["already_booked"] or validation["was_used"]:
                return self._already_booked(contact_key)
            logger.info(f"Previous link {previous_id} for {contact_key} unusable ({validation['reason']})")

        try:
            record = self.issuer.issue({**data, "phone": contact_key})
        except AlreadyBookedError:
            return self._already_booked(contact_key)

        self.lead_store.upsert(contact_key, {"booking_id": record["booking_id"]})
        return self._reply(
            BOOKING_TEMPLATE.format(name=name, url=self._link_url(record)),
            ConversationStage.SCHEDULING,
            record,
        )

    def _link_url(self, record: Mapping[str, Any]) -> str:
        """The tracked redirect when we are publicly reachable, else the provider URL."""
        if self.public_base_url:
            return tracked_redirect_url(self.public_base_url, record["booking_id"])
        return record["url"]

    def _already_booked(self, contact_key: str) -> Dict[str, Any]:
        self.lead_store.upsert(contact_key, {
            "stage": ConversationStage.COMPLETED.value,
            "has_booked": True,
        })
        logger.info(f"Lead {contact_key} already booked; no new link offered")
        return self._reply(ALREADY_BOOKED_MESSAGE, ConversationStage.COMPLETED)

    @staticmethod
    def _reply(
        message: str,
        stage: ConversationStage,
        booking_link: Mapping[str, Any] | None = None,
    ) -> Dict[str, Any]:
        return {"reply": message, "stage": stage.value, "booking_link": booking_link}
