"""Tests for the FastAPI HTTP surface.

These tests validate:
- Provider webhook: signature check, bad bodies acknowledged, bookings recorded
- Admin/query routes over the booking core
- Access-tracked booking redirect (307 / 410 / 404)
- WhatsApp verification handshake and inbound message flow
"""

import asyncio
import json

import pytest
from fastapi.testclient import TestClient

from fixtures.sample_leads import make_lead, make_webhook_event, make_whatsapp_payload
from pipelines.whatsapp_booking.agents.whatsapp_reply_agent import MockWhatsAppSender
from pipelines.whatsapp_booking.pipeline import build_services
from pipelines.whatsapp_booking.server import create_app, extract_whatsapp_messages
from pipelines.whatsapp_booking.webhook_security import SIGNATURE_HEADER, compute_signature

PHONE = "+15551234567"
SETTINGS = {
    "booking_base_url": "https://calendly.com/acme/30min",
    "company_name": "Acme",
    "public_base_url": "https://bot.example.com",
    "whatsapp_verify_token": "verify-me",
    "mock_whatsapp": True,
    "mock_llm": True,
}


@pytest.fixture
def sender():
    return MockWhatsAppSender()


@pytest.fixture
def services(clock, sender):
    return build_services(dict(SETTINGS), sender=sender, clock=clock)


@pytest.fixture
def client(services):
    return TestClient(create_app(services, start_scheduler=False))


def _post_event(client, event, headers=None):
    return client.post(
        "/calendly/webhook",
        content=json.dumps(event).encode("utf-8"),
        headers={"Content-Type": "application/json", **(headers or {})},
    )


# =============================================================================
# HEALTH
# =============================================================================

class TestHealth:
    """Liveness plus link counts."""

    def test_health(self, client, services):
        services.issuer.issue(make_lead())

        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["links"] == {"total": 1, "active": 1, "inactive": 0}


# =============================================================================
# PROVIDER WEBHOOK
# =============================================================================

class TestCalendlyWebhook:
    """Booking completed deliveries."""

    def test_booking_processed(self, client, services):
        record = services.issuer.issue(make_lead())

        response = _post_event(client, make_webhook_event(record["booking_id"]))

        assert response.status_code == 200
        assert response.json() == {"status": "processed"}
        assert services.link_store.has_booked(PHONE)

    def test_processing_runs_off_the_event_loop(self, client, services, monkeypatch):
        """The store lock is never taken on the event loop thread."""
        record = services.issuer.issue(make_lead())
        process = services.webhook_processor.process_booking_completed
        seen = {}

        def recording_process(event):
            try:
                asyncio.get_running_loop()
                seen["on_event_loop"] = True
            except RuntimeError:
                seen["on_event_loop"] = False
            return process(event)

        monkeypatch.setattr(services.webhook_processor, "process_booking_completed", recording_process)

        response = _post_event(client, make_webhook_event(record["booking_id"]))

        assert response.json() == {"status": "processed"}
        assert seen == {"on_event_loop": False}

    def test_duplicate_acknowledged(self, client, services):
        record = services.issuer.issue(make_lead())
        event = make_webhook_event(record["booking_id"])

        _post_event(client, event)
        response = _post_event(client, event)

        assert response.status_code == 200
        assert response.json() == {"status": "duplicate"}

    def test_unknown_link_acknowledged(self, client):
        response = _post_event(client, make_webhook_event("bk_unknown"))
        assert response.status_code == 200
        assert response.json() == {"status": "unknown_link"}

    def test_invalid_json_ignored(self, client):
        response = client.post("/calendly/webhook", content=b"{not json")

        assert response.status_code == 200
        assert response.json()["status"] == "ignored"

    def test_non_object_body_ignored(self, client):
        response = _post_event(client, ["not", "an", "object"])
        assert response.json()["status"] == "ignored"


class TestWebhookSignature:
    """Signature enforced only when a signing key is configured."""

    @pytest.fixture
    def signed_client(self, clock, sender):
        services = build_services(
            {**SETTINGS, "webhook_signing_key": "whsec"}, sender=sender, clock=clock
        )
        return TestClient(create_app(services, start_scheduler=False)), services

    def test_valid_signature_accepted(self, signed_client):
        client, services = signed_client
        record = services.issuer.issue(make_lead())
        body = json.dumps(make_webhook_event(record["booking_id"])).encode("utf-8")

        response = client.post(
            "/calendly/webhook",
            content=body,
            headers={SIGNATURE_HEADER: compute_signature("whsec", body)},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "processed"}

    def test_bad_signature_rejected(self, signed_client):
        client, services = signed_client
        record = services.issuer.issue(make_lead())

        response = _post_event(
            client,
            make_webhook_event(record["booking_id"]),
            headers={SIGNATURE_HEADER: "sha256=deadbeef"},
        )

        assert response.status_code == 401
        assert services.link_store.has_booked(PHONE) is False

    def test_missing_signature_rejected(self, signed_client):
        client, _ = signed_client
        assert _post_event(client, make_webhook_event("bk_x")).status_code == 401


# =============================================================================
# QUERY & ADMIN ROUTES
# =============================================================================

class TestBookingRoutes:
    """Thin wrappers over validator, store and sweeper."""

    def test_active_links_for_phone(self, client, services):
        record = services.issuer.issue(make_lead())

        body = client.get(f"/calendly/bookings/{PHONE}").json()

        assert body["contact_key"] == PHONE
        assert body["count"] == 1
        assert body["active_links"][0]["booking_id"] == record["booking_id"]

    def test_link_status(self, client, services):
        record = services.issuer.issue(make_lead())

        body = client.get(f"/calendly/bookings/{record['booking_id']}/status").json()

        assert body["validation"]["is_valid"] is True
        assert body["link"]["state"] == "active"

    def test_link_status_unknown(self, client):
        assert client.get("/calendly/bookings/bk_missing/status").status_code == 404

    def test_deactivate(self, client, services):
        record = services.issuer.issue(make_lead())

        response = client.post(f"/calendly/bookings/{record['booking_id']}/deactivate")
        again = client.post(f"/calendly/bookings/{record['booking_id']}/deactivate")

        assert response.status_code == 200
        assert response.json()["status"] == "deactivated"
        assert again.status_code == 404

    def test_validate_and_history(self, client, services):
        record = services.issuer.issue(make_lead())
        services.webhook_processor.process_booking_completed(make_webhook_event(record["booking_id"]))

        status = client.get(f"/calendly/validate/{PHONE}").json()
        history = client.get(f"/calendly/history/{PHONE}").json()

        assert status["status"] == "booked"
        assert history["total_bookings"] == 1
        assert history["history"][0]["booking_id"] == record["booking_id"]

    def test_manual_cleanup(self, client, services, clock):
        record = services.issuer.issue(make_lead())
        services.webhook_processor.deactivate(record["booking_id"])
        clock.advance(hours=25)

        body = client.post("/calendly/cleanup").json()

        assert body["purged_count"] == 1
        assert body["stats"]["total"] == 0


# =============================================================================
# BOOKING REDIRECT
# =============================================================================

class TestBookingRedirect:
    """Opening a link is tracked, then redirected or refused."""

    def test_valid_link_redirects(self, client, services):
        record = services.issuer.issue(make_lead())

        response = client.get(f"/booking/{record['booking_id']}", follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == record["url"]
        assert services.link_store.get_link(record["booking_id"])["access_count"] == 1

    def test_used_link_gone(self, client, services):
        record = services.issuer.issue(make_lead())
        services.webhook_processor.process_booking_completed(make_webhook_event(record["booking_id"]))

        response = client.get(f"/booking/{record['booking_id']}", follow_redirects=False)

        assert response.status_code == 410
        assert response.json()["reason"] == "already used"

    def test_expired_link_gone(self, client, services, clock):
        record = services.issuer.issue(make_lead())
        clock.advance(hours=25)

        response = client.get(f"/booking/{record['booking_id']}", follow_redirects=False)

        assert response.status_code == 410
        assert response.json()["reason"] == "expired"

    def test_unknown_link_404(self, client):
        assert client.get("/booking/bk_missing", follow_redirects=False).status_code == 404


# =============================================================================
# WHATSAPP
# =============================================================================

class TestExtractWhatsappMessages:
    """Cloud API body parsing."""

    def test_text_message_extracted(self):
        assert extract_whatsapp_messages(make_whatsapp_payload("15551234567", "Hi")) == [
            {"from": "15551234567", "text": "Hi"}
        ]

    def test_non_text_and_status_skipped(self):
        payload = make_whatsapp_payload("15551234567", "Hi")
        payload["entry"][0]["changes"][0]["value"]["messages"][0]["type"] = "image"
        payload["entry"].append({"changes": [{"value": {"statuses": [{"id": "x"}]}}]})

        assert extract_whatsapp_messages(payload) == []

    def test_non_dict_payload(self):
        assert extract_whatsapp_messages(["x"]) == []


class TestWhatsappWebhook:
    """Verification handshake and inbound messages."""

    def test_verification_echoes_challenge(self, client):
        response = client.get("/whatsapp/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "verify-me",
            "hub.challenge": "12345",
        })

        assert response.status_code == 200
        assert response.text == "12345"

    def test_verification_wrong_token(self, client):
        response = client.get("/whatsapp/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": "nope",
            "hub.challenge": "12345",
        })
        assert response.status_code == 403

    def test_inbound_greeting_replied(self, client, sender):
        response = client.post("/whatsapp/webhook", json=make_whatsapp_payload("+15551234567", "Hi"))

        body = response.json()
        assert body["status"] == "ok"
        assert body["processed"][0]["handled"] is True
        assert body["processed"][0]["stage"] == "collecting_info"
        assert body["processed"][0]["delivered"] is True
        assert sender.sent_messages[0]["to"] == PHONE
        assert "Welcome to Acme" in sender.sent_messages[0]["message"]

    def test_full_conversation_issues_link(self, client, services, sender):
        messages = [
            "Hi",
            "My name is Jane Doe",
            "jane@example.com",
            "I'm from Canada",
            "I'm interested in web design",
        ]
        for text in messages:
            client.post("/whatsapp/webhook", json=make_whatsapp_payload("+15551234567", text))

        active_id = services.link_store.active_booking_id(PHONE)
        assert active_id is not None
        assert f"https://bot.example.com/booking/{active_id}" in sender.sent_messages[-1]["message"]

    def test_link_in_reply_counts_the_open(self, client, services, sender):
        for text in ["Hi", "My name is Jane Doe", "jane@example.com", "I'm from Canada", "I'm interested in web design"]:
            client.post("/whatsapp/webhook", json=make_whatsapp_payload("+15551234567", text))
        active_id = services.link_store.active_booking_id(PHONE)
        reply = sender.sent_messages[-1]["message"]
        path = reply[reply.index("/booking/"):].split()[0]

        response = client.get(path, follow_redirects=False)

        record = services.link_store.get_link(active_id)
        assert path == f"/booking/{active_id}"
        assert response.status_code == 307
        assert response.headers["location"] == record["url"]
        assert record["access_count"] == 1

    def test_invalid_json_ignored(self, client):
        response = client.post(
            "/whatsapp/webhook",
            content=b"{oops",
            headers={"Content-Type": "application/json"},
        )
        assert response.json() == {"status": "ignored"}
