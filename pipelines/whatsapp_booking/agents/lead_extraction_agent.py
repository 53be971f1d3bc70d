"""Lead Extraction Agent.

Classifies an inbound chat message into an intent and pulls out lead
fields. The LLM is asked for a JSON object; whenever it is unavailable
(mock mode, missing key, provider error, bad JSON) a keyword/regex
classifier is used instead, so the conversation never stalls on NLP.
"""

import re
from typing import Any, Dict, Optional

from core.llm_client import LLMClient
from core.logger import get_logger
from pipelines.core.base_agent import BaseAgent
from pipelines.whatsapp_booking.utils.helpers import normalize_contact_key

logger = get_logger(__name__)

INTENTS = (
    "greeting",
    "lead_collection",
    "service_inquiry",
    "scheduling",
    "goodbye",
    "question",
    "off_topic",
    "other",
)
ENTITY_FIELDS = ("name", "email", "phone", "country", "service")

SYSTEM_PROMPT = f"""You classify WhatsApp messages sent to a sales assistant.
Return a JSON object:
{{
  "intent": one of {", ".join(INTENTS)},
  "entities": {{"name": str|null, "email": str|null, "phone": str|null,
               "country": str|null, "service": str|null}}
}}
Only fill an entity when the user states it in this message."""

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
PHONE_RE = re.compile(r"\+?\d[\d\s-]{8,16}\d")
# Name: first word any case, following words only while capitalized
NAME_RE = re.compile(r"\b(?i:my name is)\s+([A-Za-z][A-Za-z'-]*(?:\s+[A-Z][A-Za-z'-]*)*)")
# Phrase runs until punctuation, "and"/"but", or end of message
_PHRASE = r"([a-z][a-z ]*?)(?=\s+(?:and|but)\b|\s*[.,!?;]|\s*$)"
COUNTRY_RE = re.compile(r"\b(?:i am from|i'm from|i live in|based in)\s+" + _PHRASE, re.IGNORECASE)
SERVICE_RE = re.compile(r"\b(?:interested in|looking for|need help with)\s+" + _PHRASE, re.IGNORECASE)

KEYWORD_INTENTS = [
    ("scheduling", ("schedule", "book", "call", "meeting", "appointment")),
    ("goodbye", ("bye", "goodbye", "see you", "thank you", "thanks")),
    ("service_inquiry", ("service", "price", "pricing", "cost", "offer")),
    ("greeting", ("hi", "hello", "hey", "good morning", "good evening")),
]


def regex_analysis(text: str) -> Dict[str, Any]:
    """
    Keyword/regex fallback classifier.

    Returns:
        {"intent", "entities", "source": "fallback"}
    """
    entities: Dict[str, Optional[str]] = {field: None for field in ENTITY_FIELDS}

    if match := EMAIL_RE.search(text):
        entities["email"] = match.group(0)
    if match := PHONE_RE.search(text):
        entities["phone"] = normalize_contact_key(match.group(0))
    if match := NAME_RE.search(text):
        entities["name"] = match.group(1).strip()
    if match := COUNTRY_RE.search(text):
        entities["country"] = match.group(1).strip().title()
    if match := SERVICE_RE.search(text):
        entities["service"] = match.group(1).strip()

    words = set(re.findall(r"[a-z']+", text.lower()))
    lowered = text.lower()
    intent = "other"
    for candidate, keywords in KEYWORD_INTENTS:
        if any((k in words) if " " not in k else (k in lowered) for k in keywords):
            intent = candidate
            break

    if any(entities.values()) and intent in ("other", "greeting"):
        intent = "lead_collection"
    elif intent == "other" and text.strip().endswith("?"):
        intent = "question"

    return {"intent": intent, "entities": entities, "source": "fallback"}


class LeadExtractionAgent(BaseAgent):
    """
    Turns an inbound message into {intent, entities}.

    Contract:
        Input: message ({"from": phone, "text": str})
        Output: contact_key, analysis ({intent, entities, source})
    """

    def __init__(self, llm: LLMClient | None = None) -> None:
        super().__init__(name="LeadExtractionAgent")
        self.llm = llm
        logger.info(f"LeadExtractionAgent initialized (llm={'on' if llm else 'off'})")

    def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        message = input_data.get("message") or {}
        contact_key = normalize_contact_key(message.get("from"))
        if not contact_key:
            raise ValueError("Inbound message has no sender")

        text = (message.get("text") or "").strip()
        return {"contact_key": contact_key, "analysis": self.analyze(text)}

    def analyze(self, text: str) -> Dict[str, Any]:
        """Classify one message, falling back to regex on any LLM problem."""
        if self.llm is None or not text:
            return regex_analysis(text)

        try:
            raw = self.llm.generate_json(text, system_prompt=SYSTEM_PROMPT, max_tokens=300)
        except (RuntimeError, ValueError) as e:
            logger.warning(f"LLM classification failed, using fallback: {e}")
            return regex_analysis(text)

        return self._normalize(raw, text)

    @staticmethod
    def _normalize(raw: Dict[str, Any], text: str) -> Dict[str, Any]:
        intent = raw.get("intent")
        if intent not in INTENTS:
            intent = "other"

        raw_entities = raw.get("entities")
        if not isinstance(raw_entities, dict):
            raw_entities = {}
        entities: Dict[str, Optional[str]] = {}
        for field in ENTITY_FIELDS:
            value = raw_entities.get(field)
            entities[field] = str(value).strip() if value and str(value).lower() != "null" else None

        # Regex fills what the model missed
        fallback = regex_analysis(text)["entities"]
        for field, value in fallback.items():
            if not entities[field] and value:
                entities[field] = value

        return {"intent": intent, "entities": entities, "source": "llm"}
