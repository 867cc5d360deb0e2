"""EcoManager webhook HTTP handlers: order lifecycle push events.

GET is EcoManager's reachability check before it activates a webhook.
POST flow:
1. Require the four X-EcoManager-* headers (400)
2. Resolve the WebhookConfiguration by webhook id (404)
3. Verify HMAC-SHA256 of the raw body with that configuration's secret (401)
4. Apply the event to the confirmation store (idempotent)
5. Touch last_triggered and answer 200 with the processing time

EcoManager expects an answer within 5 seconds. The budget is not enforced;
overruns are logged. Repository calls run in worker threads.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from ordersync.webhooks.confirmations import (
    EVENT_CONFIRMATION_CHANGED,
    EVENT_ORDER_CREATED,
    ConfirmationService,
    EcoManagerOrderEvent,
)
from ordersync.webhooks.verification import SIGNATURE_HEADER, verify_signature

logger = logging.getLogger(__name__)

SOURCE_HEADER = "x-ecomanager-source"
EVENT_HEADER = "x-ecomanager-event"
WEBHOOK_ID_HEADER = "x-ecomanager-webhook-id"

REQUIRED_HEADERS = (SIGNATURE_HEADER, SOURCE_HEADER, EVENT_HEADER, WEBHOOK_ID_HEADER)


def _log_webhook(event_type: str, webhook_id: str, status: str) -> None:
    """Audit log line for webhook activity."""
    logger.info(
        "WEBHOOK_AUDIT provider=ecomanager event=%s id=%s status=%s",
        event_type,
        webhook_id,
        status,
    )


def _apply_event(
    service: ConfirmationService, event_type: str, payload: dict, store_identifier: str
) -> str:
    """Dispatch on event type. Returns the audit status."""
    if event_type not in (EVENT_ORDER_CREATED, EVENT_CONFIRMATION_CHANGED):
        logger.info("Unhandled EcoManager event type: %s", event_type)
        return "ignored"

    event = EcoManagerOrderEvent.model_validate(payload)
    if event_type == EVENT_ORDER_CREATED:
        service.handle_order_created(event, store_identifier)
    else:
        service.handle_confirmation_changed(event, store_identifier)
    return "applied"


async def handle_validation(request: Request) -> PlainTextResponse:
    logger.info("EcoManager webhook validation request received")
    return PlainTextResponse("OK", status_code=200)


async def handle_webhook(request: Request) -> JSONResponse:
    """Receive one EcoManager event. Never lets an exception escape."""
    start = time.perf_counter()
    service: ConfirmationService = request.app.state.confirmation_service
    budget_ms: int = request.app.state.settings.webhook_response_budget_ms

    try:
        headers = {k.lower(): v for k, v in request.headers.items()}
        event_type = headers.get(EVENT_HEADER, "")
        webhook_id = headers.get(WEBHOOK_ID_HEADER, "")

        # 1. Required headers, checked before any signature work
        missing = [h for h in REQUIRED_HEADERS if not headers.get(h)]
        if missing:
            _log_webhook(event_type or "unknown", webhook_id or "unknown", "missing_headers")
            return JSONResponse({"error": "Missing required headers"}, status_code=400)

        logger.info(
            "Webhook received: %s from %s (ID: %s)",
            event_type,
            headers[SOURCE_HEADER],
            webhook_id,
        )

        # 2. Configuration lookup
        config = await asyncio.to_thread(service.get_webhook_config, webhook_id)
        if config is None:
            _log_webhook(event_type, webhook_id, "not_configured")
            return JSONResponse({"error": "Webhook not configured"}, status_code=404)

        # 3. Signature over the raw bytes
        body = await request.body()
        if not verify_signature(body, headers[SIGNATURE_HEADER], config.webhook_secret):
            logger.error("Invalid webhook signature for webhook %s", webhook_id)
            _log_webhook(event_type, webhook_id, "signature_failed")
            return JSONResponse({"error": "Invalid signature"}, status_code=401)

        # 4. Body and dispatch
        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            _log_webhook(event_type, webhook_id, "invalid_json")
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(payload, dict):
            _log_webhook(event_type, webhook_id, "invalid_body")
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)

        try:
            status = await asyncio.to_thread(
                _apply_event, service, event_type, payload, config.store_identifier
            )
        except ValidationError:
            _log_webhook(event_type, webhook_id, "invalid_payload")
            return JSONResponse({"error": "Invalid order payload"}, status_code=400)

        # 5. Bookkeeping
        await asyncio.to_thread(service.update_webhook_last_triggered, config)
        _log_webhook(event_type, webhook_id, status)

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        if elapsed_ms > budget_ms:
            logger.warning(
                "EcoManager webhook took %dms (budget %dms): %s", elapsed_ms, budget_ms, event_type
            )
        else:
            logger.debug("Webhook processed in %dms: %s", elapsed_ms, event_type)

        return JSONResponse({"success": True, "processingTime": f"{elapsed_ms}ms"}, status_code=200)

    except Exception:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        logger.exception("EcoManager webhook processing error (%dms)", elapsed_ms)
        return JSONResponse({"error": "Internal server error"}, status_code=500)


def register_ecomanager_routes(app: FastAPI) -> None:
    """Register the EcoManager webhook endpoint on the FastAPI app."""
    app.add_api_route("/webhooks/ecomanager", handle_validation, methods=["GET"])
    app.add_api_route("/webhooks/ecomanager", handle_webhook, methods=["POST"])
    logger.info("Webhook routes registered: /webhooks/ecomanager")
