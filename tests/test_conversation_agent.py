"""Tests for LeadExtractionAgent and ConversationAgent.

These tests validate:
- Regex fallback extraction and keyword intents
- LLM classification with fallback on provider or JSON failures
- Stage flow: greeting, field collection, scheduling, completed
- A previously issued link is validated before it is shown again
- Booked contacts are never offered a second link
"""

import json

import pytest

from core.llm_client import BaseLLMClient, LLMClient
from fixtures.sample_leads import make_webhook_event
from pipelines.whatsapp_booking.agents.conversation_agent import (
    ALREADY_BOOKED_MESSAGE,
    COMPLETED_MESSAGE,
    FIELD_QUESTIONS,
    ConversationAgent,
    missing_fields,
)
from pipelines.whatsapp_booking.agents.lead_extraction_agent import (
    LeadExtractionAgent,
    regex_analysis,
)

PHONE = "+15551234567"


class CannedProvider(BaseLLMClient):
    """LLM provider returning a fixed reply (or raising)."""

    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def generate(self, prompt, system_prompt="", model=None, temperature=0.3,
                 max_tokens=512, json_mode=False):
        self.calls.append({"prompt": prompt, "json_mode": json_mode})
        if self.error:
            raise self.error
        return self.reply


def _analysis(intent="lead_collection", **entities):
    return {"intent": intent, "entities": entities}


FULL_LEAD = {
    "name": "Jane Doe",
    "email": "jane@example.com",
    "country": "Canada",
    "service": "Web Design",
}


@pytest.fixture
def agent(lead_store, issuer, validator):
    return ConversationAgent(
        lead_store, issuer, validator, company_name="Acme", public_base_url="https://bot.example.com/"
    )


# =============================================================================
# EXTRACTION (FALLBACK)
# =============================================================================

class TestRegexAnalysis:
    """Keyword/regex classifier."""

    def test_greeting(self):
        result = regex_analysis("Hi")
        assert result["intent"] == "greeting"
        assert result["source"] == "fallback"

    def test_name_and_email(self):
        result = regex_analysis("My name is Jane Doe and my email is jane@example.com")

        assert result["intent"] == "lead_collection"
        assert result["entities"]["name"] == "Jane Doe"
        assert result["entities"]["email"] == "jane@example.com"

    def test_lowercase_name_start(self):
        assert regex_analysis("my name is jane")["entities"]["name"] == "jane"

    def test_country_and_service(self):
        result = regex_analysis("I'm from new zealand and I'm interested in web design.")

        assert result["entities"]["country"] == "New Zealand"
        assert result["entities"]["service"] == "web design"

    def test_phone_normalized(self):
        assert regex_analysis("call me on +1 555 123 4567")["entities"]["phone"] == PHONE

    @pytest.mark.parametrize("text,intent", [
        ("Can we book a meeting?", "scheduling"),
        ("Thanks, bye", "goodbye"),
        ("What does your pricing look like", "service_inquiry"),
        ("Is anyone there?", "question"),
        ("asdf", "other"),
    ])
    def test_keyword_intents(self, text, intent):
        assert regex_analysis(text)["intent"] == intent


# =============================================================================
# EXTRACTION (LLM)
# =============================================================================

class TestLeadExtractionAgent:
    """LLM path and its fallbacks."""

    def test_without_llm_uses_fallback(self):
        result = LeadExtractionAgent().run({"message": {"from": "15551234567", "text": "Hello"}})

        assert result["contact_key"] == "15551234567"
        assert result["analysis"]["source"] == "fallback"

    def test_missing_sender_raises(self):
        with pytest.raises(ValueError):
            LeadExtractionAgent().run({"message": {"text": "Hello"}})

    def test_llm_result_normalized(self):
        provider = CannedProvider(reply=json.dumps({
            "intent": "lead_collection",
            "entities": {"name": " Jane Doe ", "email": "null", "country": None},
        }))
        agent = LeadExtractionAgent(llm=LLMClient(provider=provider))

        analysis = agent.analyze("I'm Jane Doe, reach me at jane@example.com")

        assert provider.calls[0]["json_mode"] is True
        assert analysis["source"] == "llm"
        assert analysis["intent"] == "lead_collection"
        assert analysis["entities"]["name"] == "Jane Doe"
        # Regex fills what the model returned as "null"
        assert analysis["entities"]["email"] == "jane@example.com"
        assert analysis["entities"]["country"] is None

    def test_unknown_intent_becomes_other(self):
        provider = CannedProvider(reply=json.dumps({"intent": "rant", "entities": []}))
        analysis = LeadExtractionAgent(llm=LLMClient(provider=provider)).analyze("hmm")
        assert analysis["intent"] == "other"

    @pytest.mark.parametrize("provider", [
        CannedProvider(reply="not json"),
        CannedProvider(reply="[1, 2]"),
        CannedProvider(error=RuntimeError("provider down")),
    ])
    def test_llm_failures_fall_back(self, provider):
        analysis = LeadExtractionAgent(llm=LLMClient(provider=provider)).analyze("Hi")
        assert analysis["source"] == "fallback"
        assert analysis["intent"] == "greeting"


# =============================================================================
# CONVERSATION FLOW
# =============================================================================

class TestMissingFields:
    """Asking order follows the required field list."""

    def test_order(self):
        assert missing_fields({}) == ["name", "email", "country", "service"]
        assert missing_fields({"name": "Jane", "country": "Canada"}) == ["email", "service"]


class TestCollectingInfo:
    """Greeting and field questions."""

    def test_first_message_greets_and_asks_name(self, agent, lead_store):
        result = agent.handle(PHONE, _analysis("greeting"))

        assert result["reply"].startswith("👋 Hi there! Welcome to Acme!")
        assert FIELD_QUESTIONS["name"] in result["reply"]
        assert result["stage"] == "collecting_info"
        assert result["booking_link"] is None
        assert lead_store.get(PHONE)["stage"] == "collecting_info"

    def test_next_question_without_greeting(self, agent):
        agent.handle(PHONE, _analysis("greeting"))

        result = agent.handle(PHONE, _analysis(name="Jane Doe"))

        assert result["reply"] == FIELD_QUESTIONS["email"]

    def test_fields_accumulate_across_messages(self, agent, lead_store):
        agent.handle(PHONE, _analysis(name="Jane Doe"))
        agent.handle(PHONE, _analysis(email="jane@example.com"))

        data = lead_store.get(PHONE)["data"]
        assert data["name"] == "Jane Doe"
        assert data["email"] == "jane@example.com"

    def test_typed_phone_never_replaces_sender(self, agent, lead_store):
        agent.handle(PHONE, _analysis(phone="+19998887777"))
        assert lead_store.get(PHONE)["data"]["phone"] == PHONE

    def test_goodbye(self, agent):
        result = agent.handle(PHONE, _analysis("goodbye"))
        assert result["reply"] == "Thanks for chatting with Acme. Have a great day!"

    def test_run_requires_contact_key(self, agent):
        with pytest.raises(ValueError):
            agent.run({"analysis": _analysis()})


class TestScheduling:
    """Handing off to the booking core."""

    def test_complete_lead_gets_link(self, agent, lead_store, link_store):
        result = agent.handle(PHONE, _analysis(**FULL_LEAD))

        record = result["booking_link"]
        assert result["stage"] == "scheduling"
        assert f"https://bot.example.com/booking/{record['booking_id']}\n" in result["reply"]
        assert record["url"] not in result["reply"]
        assert record["lead_snapshot"]["phone"] == PHONE
        assert lead_store.get(PHONE)["booking_id"] == record["booking_id"]
        assert link_store.active_booking_id(PHONE) == record["booking_id"]

    def test_valid_link_re_presented(self, agent, link_store):
        first = agent.handle(PHONE, _analysis(**FULL_LEAD))
        second = agent.handle(PHONE, _analysis("scheduling"))

        assert second["booking_link"]["booking_id"] == first["booking_link"]["booking_id"]
        assert link_store.counts()["total"] == 1
        assert f"/booking/{first['booking_link']['booking_id']}" in second["reply"]

    def test_provider_url_when_not_publicly_reachable(self, lead_store, issuer, validator):
        agent = ConversationAgent(lead_store, issuer, validator, company_name="Acme")

        result = agent.handle(PHONE, _analysis(**FULL_LEAD))

        assert result["booking_link"]["url"] in result["reply"]

    def test_expired_link_replaced(self, agent, lead_store, clock):
        first = agent.handle(PHONE, _analysis(**FULL_LEAD))
        clock.advance(hours=25)

        second = agent.handle(PHONE, _analysis("scheduling"))

        assert second["booking_link"]["booking_id"] != first["booking_link"]["booking_id"]
        assert lead_store.get(PHONE)["booking_id"] == second["booking_link"]["booking_id"]


class TestAlreadyBooked:
    """A booked contact is never offered another link."""

    def test_booked_lead_gets_completed_reply(self, agent, processor, link_store):
        first = agent.handle(PHONE, _analysis(**FULL_LEAD))
        processor.process_booking_completed(make_webhook_event(first["booking_link"]["booking_id"]))

        result = agent.handle(PHONE, _analysis("scheduling"))

        assert result["reply"] == COMPLETED_MESSAGE
        assert result["booking_link"] is None
        assert link_store.counts()["total"] == 1

    def test_service_inquiry_after_booking_reports_booked(self, agent, processor, lead_store, link_store):
        first = agent.handle(PHONE, _analysis(**FULL_LEAD))
        processor.process_booking_completed(make_webhook_event(first["booking_link"]["booking_id"]))

        result = agent.handle(PHONE, _analysis("service_inquiry"))

        assert result["reply"] == ALREADY_BOOKED_MESSAGE
        assert result["stage"] == "completed"
        assert lead_store.get(PHONE)["stage"] == "completed"
        assert link_store.counts()["active"] == 0

    def test_history_without_lead_record_refused(self, agent, link_store):
        """Issuer refusal surfaces as the already-booked reply."""
        link_store.append_history({
            "booking_id": "bk_elsewhere",
            "contact_key": PHONE,
            "booked_at": "2025-01-10T09:00:00+00:00",
        })

        result = agent.handle(PHONE, _analysis(**FULL_LEAD))

        assert result["reply"] == ALREADY_BOOKED_MESSAGE
        assert result["booking_link"] is None
