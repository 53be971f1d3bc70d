"""
HTTP surface for the WhatsApp booking assistant (FastAPI).

Routes:
    GET  /health
    POST /calendly/webhook                           provider booking events
    GET  /calendly/bookings/{phone}                  active links for a contact
    GET  /calendly/bookings/{booking_id}/status      validation + record
    POST /calendly/bookings/{booking_id}/deactivate  admin: retire a link
    GET  /calendly/validate/{phone}                  booking status
    GET  /calendly/history/{phone}                   booking history
    POST /calendly/cleanup                           manual sweep
    GET  /booking/{booking_id}                       access-tracked redirect
    GET  /whatsapp/webhook                           Meta verification handshake
    POST /whatsapp/webhook                           inbound chat message

The provider webhook never answers 5xx for events it cannot use: those
are acknowledged with 200 so the provider does not retry them forever.
"""

import json
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse

from core.logger import get_logger
from pipelines.whatsapp_booking.config import SERVICE_NAME, load_booking_settings
from pipelines.whatsapp_booking.errors import LinkNotFoundError, WebhookSignatureError
from pipelines.whatsapp_booking.pipeline import (
    BookingServices,
    build_message_pipeline,
    build_services,
)
from pipelines.whatsapp_booking.utils.helpers import normalize_contact_key, to_iso, utc_now
from pipelines.whatsapp_booking.webhook_security import SIGNATURE_HEADER, verify_signature

logger = get_logger(__name__)


def extract_whatsapp_messages(payload: Any) -> list[Dict[str, str]]:
    """
    Pull text messages out of a WhatsApp Cloud API webhook body.

    Status callbacks and non-text messages are skipped.

    Returns:
        [{"from": phone, "text": body}, ...]
    """
    messages: list[Dict[str, str]] = []
    if not isinstance(payload, dict):
        return messages

    for entry in payload.get("entry") or []:
        for change in (entry or {}).get("changes") or []:
            value = (change or {}).get("value") or {}
            for message in value.get("messages") or []:
                if not isinstance(message, dict) or message.get("type") != "text":
                    continue
                sender = message.get("from")
                text = (message.get("text") or {}).get("body")
                if sender and text:
                    messages.append({"from": sender, "text": text})
    return messages


def create_app(
    services: Optional[BookingServices] = None,
    start_scheduler: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        services: Wired service graph. Built from load_booking_settings()
            when omitted.
        start_scheduler: Start the periodic cleanup sweep on startup.
    """
    services = services or build_services(load_booking_settings())
    pipeline = build_message_pipeline(services)
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_scheduler:
            services.scheduler.start()
        logger.info(f"{SERVICE_NAME} started")
        yield
        if start_scheduler:
            services.scheduler.stop()
        logger.info(f"{SERVICE_NAME} stopped")

    app = FastAPI(title="WhatsApp Lead Assistant", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "timestamp": to_iso(utc_now()),
            "links": services.link_store.counts(),
        }

    # =========================================================================
    # SCHEDULING PROVIDER
    # =========================================================================

    @app.post("/calendly/webhook")
    async def calendly_webhook(request: Request) -> Dict[str, Any]:
        raw_body = await request.body()

        signing_key = settings.get("webhook_signing_key")
        if signing_key:
            try:
                verify_signature(signing_key, raw_body, request.headers.get(SIGNATURE_HEADER))
            except WebhookSignatureError as e:
                raise HTTPException(status_code=401, detail=str(e)) from e
        else:
            logger.debug("Webhook signing key not configured - signature check skipped")

        try:
            event = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Booking webhook body is not valid JSON: {e}")
            return {"status": "ignored", "reason": "invalid json"}

        if not isinstance(event, dict):
            return {"status": "ignored", "reason": "unexpected payload"}

        outcome = await run_in_threadpool(services.webhook_processor.process_booking_completed, event)
        return {"status": outcome.value}

    @app.get("/calendly/bookings/{phone}")
    def active_bookings(phone: str) -> Dict[str, Any]:
        links = services.validator.active_links_for(phone)
        return {
            "contact_key": normalize_contact_key(phone),
            "active_links": links,
            "count": len(links),
        }

    @app.get("/calendly/bookings/{booking_id}/status")
    def booking_link_status(booking_id: str) -> Dict[str, Any]:
        validation = services.validator.validate(booking_id)
        try:
            record = services.validator.get_link(booking_id)
        except LinkNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e
        return {"validation": validation, "link": record}

    @app.post("/calendly/bookings/{booking_id}/deactivate")
    def deactivate_booking_link(booking_id: str) -> Dict[str, Any]:
        if not services.webhook_processor.deactivate(booking_id):
            raise HTTPException(status_code=404, detail=f"No active booking link {booking_id}")
        return {"status": "deactivated", "booking_id": booking_id}

    @app.get("/calendly/validate/{phone}")
    def validate_contact(phone: str) -> Dict[str, Any]:
        return dict(services.validator.booking_status(phone))

    @app.get("/calendly/history/{phone}")
    def booking_history(phone: str) -> Dict[str, Any]:
        contact_key = normalize_contact_key(phone)
        history = services.link_store.history_for(contact_key)
        return {"contact_key": contact_key, "history": history, "total_bookings": len(history)}

    @app.post("/calendly/cleanup")
    def run_cleanup() -> Dict[str, Any]:
        results = services.scheduler.run_now()
        return {**results, "stats": services.sweeper.stats()}

    # =========================================================================
    # BOOKING LINK REDIRECT
    # =========================================================================

    @app.get("/booking/{booking_id}")
    def open_booking_link(booking_id: str):
        try:
            record = services.validator.track_access(booking_id)
        except LinkNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e)) from e

        validation = services.validator.validate(booking_id)
        if not validation["is_valid"]:
            return JSONResponse(
                status_code=410,
                content={"booking_id": booking_id, "reason": validation["reason"]},
            )
        return RedirectResponse(record["url"], status_code=307)

    # =========================================================================
    # WHATSAPP
    # =========================================================================

    @app.get("/whatsapp/webhook")
    def whatsapp_verify(request: Request):
        params = request.query_params
        verify_token = settings.get("whatsapp_verify_token")
        if (
            params.get("hub.mode") == "subscribe"
            and verify_token
            and params.get("hub.verify_token") == verify_token
        ):
            logger.info("WhatsApp webhook verified")
            return PlainTextResponse(params.get("hub.challenge", ""))
        raise HTTPException(status_code=403, detail="Verification failed")

    @app.post("/whatsapp/webhook")
    async def whatsapp_inbound(request: Request) -> Dict[str, Any]:
        try:
            payload = await request.json()
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"WhatsApp webhook body is not valid JSON: {e}")
            return {"status": "ignored"}

        results = []
        for message in extract_whatsapp_messages(payload):
            try:
                context = await run_in_threadpool(pipeline.run, {"message": message})
            except RuntimeError as e:
                logger.error(f"Message from {message['from']} not handled: {e}")
                results.append({"from": message["from"], "handled": False})
                continue
            results.append({
                "from": message["from"],
                "handled": True,
                "stage": context.get("stage"),
                "delivered": context.get("delivered", False),
            })

        return {"status": "ok", "processed": results}

    return app
