"""WhatsApp Reply Agent.

Sends the conversation reply back to the lead.

Design:
    - Mock mode for testing (MOCK_WHATSAPP=true, the default)
    - Meta WhatsApp Cloud API sender over requests
    - A failed send never fails the pipeline: it is logged and reported
      as delivered=False
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

import requests

from core.logger import get_logger
from pipelines.core.base_agent import BaseAgent
from pipelines.whatsapp_booking.utils.helpers import retrying_session

logger = get_logger(__name__)

GRAPH_API_URL = "https://graph.facebook.com/v18.0"


class WhatsAppSender(Protocol):
    """Protocol for WhatsApp sending implementations."""

    def send(self, to: str, message: str) -> bool:
        """Send a WhatsApp text message. Returns True on success."""
        ...


class MockWhatsAppSender:
    """Mock WhatsApp sender for testing."""

    def __init__(self) -> None:
        self.sent_messages: list[dict[str, Any]] = []

    def send(self, to: str, message: str) -> bool:
        """Record message instead of sending."""
        self.sent_messages.append({
            "to": to,
            "message": message,
            "sent_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.info(f"MOCK WHATSAPP: To={to}, Message length={len(message)}")
        return True


class MetaWhatsAppSender:
    """Sends text messages through the WhatsApp Cloud API."""

    def __init__(
        self,
        token: str,
        phone_number_id: str,
        timeout: float = 10.0,
        api_url: str = GRAPH_API_URL,
        session: requests.Session | None = None,
    ) -> None:
        if not token or not phone_number_id:
            raise ValueError("WhatsApp token and phone number id are required")
        self.token = token
        self.phone_number_id = phone_number_id
        self.timeout = timeout
        self.api_url = api_url.rstrip("/")
        self.session = session or retrying_session()

    def send(self, to: str, message: str) -> bool:
        try:
            response = self.session.post(
                f"{self.api_url}/{self.phone_number_id}/messages",
                json={
                    "messaging_product": "whatsapp",
                    "to": to.lstrip("+"),
                    "type": "text",
                    "text": {"body": message},
                },
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"WhatsApp Cloud API send to {to} failed: {e}")
            return False
        return True


def build_sender(settings: Dict[str, Any]) -> WhatsAppSender:
    """MockWhatsAppSender unless mock mode is off and credentials are set."""
    if settings.get("mock_whatsapp", True):
        return MockWhatsAppSender()
    return MetaWhatsAppSender(
        token=settings.get("whatsapp_token", ""),
        phone_number_id=settings.get("whatsapp_phone_number_id", ""),
    )


class WhatsAppReplyAgent(BaseAgent):
    """
    Delivers `reply` to the contact.

    Contract:
        Input: contact_key, reply
        Output: delivered (bool)
    """

    def __init__(self, sender: Optional[WhatsAppSender] = None) -> None:
        super().__init__(name="WhatsAppReplyAgent")
        self.sender = sender or MockWhatsAppSender()
        self._is_mock = isinstance(self.sender, MockWhatsAppSender)
        logger.info(f"WhatsAppReplyAgent initialized (mock={self._is_mock})")

    def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        to = input_data.get("contact_key")
        reply = input_data.get("reply")
        if not to or not reply:
            logger.warning("Nothing to send (missing contact_key or reply)")
            return {"delivered": False}

        try:
            delivered = bool(self.sender.send(to=to, message=reply))
        except Exception as e:
            logger.error(f"WhatsApp send error for {to}: {e}")
            delivered = False

        if not delivered:
            logger.warning(f"Reply to {to} not delivered")
        return {"delivered": delivered}
