"""Maystro shipping webhooks: reconciliation and HTTP handlers.

Security contract:
- Maystro retries on anything but 200, so logical failures and unexpected
  errors are answered with 200 and kept in the audit log for replay
- Only an undecodable body gets a 400
- Error responses never include exception details
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ordersync.errors import EventAlreadyProcessedError, OrderSyncError
from ordersync.models import SOURCE_MAYSTRO
from ordersync.store.base import OrderRepository
from ordersync.webhooks.audit import DEFAULT_STATS_PERIOD, AuditLog
from ordersync.webhooks.envelope import EnvelopeError, decode_envelope

logger = logging.getLogger(__name__)

EVENT_ORDER_STATUS_CHANGED = "OrderStatusChanged"
# Gateway failures; the payload keeps the raw request body under "body"
EVENT_ERROR = "error"

# Maystro numeric status -> shipping status label
MAYSTRO_STATUS_MAP: dict[int, str] = {
    4: "CRÉÉ",
    5: "DEMANDE DE RAMASSAGE",
    6: "EN COURS",
    8: "EN ATTENTE DE TRANSIT",
    9: "EN TRANSIT POUR EXPÉDITION",
    10: "EN TRANSIT POUR RETOUR",
    11: "EN ATTENTE",
    12: "EN RUPTURE DE STOCK",
    15: "PRÊT À EXPÉDIER",
    22: "ASSIGNÉ",
    31: "EXPÉDIÉ",
    32: "ALERTÉ",
    41: "LIVRÉ",
    42: "REPORTÉ",
    50: "ANNULÉ",
    51: "PRÊT À RETOURNER",
    52: "PRIS PAR LE MAGASIN",
    53: "NON REÇU",
}

# Headers never copied into the audit log
_REDACTED_HEADERS = {"authorization", "cookie"}


def map_maystro_status(status: Any) -> str:
    try:
        code = int(status)
    except (TypeError, ValueError):
        return f"INCONNU ({status})"
    return MAYSTRO_STATUS_MAP.get(code, f"INCONNU ({code})")


@dataclass
class ReconcileResult:
    success: bool
    message: str
    order_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.order_id:
            d["orderId"] = self.order_id
        return d


class ShippingReconciler:
    """Maps Maystro status events onto local order shipping status."""

    def __init__(self, orders: OrderRepository, audit_log: AuditLog) -> None:
        self._orders = orders
        self._audit = audit_log

    def process(self, data: dict[str, Any], *, audit: bool = True) -> ReconcileResult:
        """Apply one decoded Maystro event.

        With ``audit`` set, exactly one audit entry is written for the call.
        Retries pass ``audit=False`` and update their existing entry instead.
        """
        event_type = str(data.get("event") or "unknown")
        try:
            result = self._reconcile(event_type, data.get("payload"))
        except Exception as exc:
            logger.exception("Error processing Maystro webhook (%s)", event_type)
            result = ReconcileResult(False, f"Error processing webhook: {exc}")

        if audit:
            self._audit.record(
                source=SOURCE_MAYSTRO,
                event_type=event_type,
                payload=data,
                processed=result.success,
                error=None if result.success else result.message,
                order_id=result.order_id,
            )
        return result

    def _reconcile(self, event_type: str, payload: Any) -> ReconcileResult:
        if event_type != EVENT_ORDER_STATUS_CHANGED or not isinstance(payload, dict):
            return ReconcileResult(
                False, "Webhook event not processed - unsupported event type or missing data"
            )
        reference = payload.get("external_order_id")
        if not reference:
            return ReconcileResult(False, "Webhook event not processed - missing external_order_id")

        order = self._orders.get_by_reference(str(reference))
        if order is None:
            logger.info("Order not found for reference: %s", reference)
            return ReconcileResult(False, f"Order not found for reference: {reference}")

        shipping_status = map_maystro_status(payload.get("status"))
        tracking = payload.get("display_id_order")
        self._orders.update_shipping(order.id, shipping_status, str(tracking) if tracking else None)
        logger.info("Updated order %s shipping status to: %s", reference, shipping_status)
        return ReconcileResult(
            True, f"Order {reference} shipping status updated to {shipping_status}", order.id
        )

    def retry(self, event_id: str) -> ReconcileResult:
        """Re-run an unprocessed audit entry against its stored payload."""
        event = self._audit.get(event_id)
        if event.processed:
            raise EventAlreadyProcessedError(event_id)

        source = event.payload
        if event.event_type == EVENT_ERROR and isinstance(source, dict) and "body" in source:
            source = source["body"]

        try:
            data = decode_envelope(source)
        except EnvelopeError as exc:
            result = ReconcileResult(False, str(exc))
        else:
            result = self.process(data, audit=False)
        self._audit.mark_result(event_id, result.success, result.message)
        logger.info("Retried webhook event %s: success=%s", event_id, result.success)
        return result


# ── HTTP handlers ─────────────────────────────────────────────────────────
# Repository work runs in worker threads; audit log routes are plain ``def``.


def _error_response(exc: OrderSyncError) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": {"message": exc.message}}, status_code=exc.status_code
    )


async def handle_shipping_webhook(request: Request) -> JSONResponse:
    """Receive a Maystro event. 400 only for an undecodable body, else 200."""
    reconciler: ShippingReconciler = request.app.state.shipping_reconciler
    audit_log: AuditLog = request.app.state.audit_log

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items() if k.lower() not in _REDACTED_HEADERS}

    try:
        try:
            data = decode_envelope(body)
        except EnvelopeError:
            logger.warning("Invalid Maystro webhook data format (%d bytes)", len(body))
            return JSONResponse(
                {"success": False, "error": "Invalid webhook data format"}, status_code=400
            )

        result = await asyncio.to_thread(reconciler.process, data)
        if result.success:
            logger.info("Maystro webhook processed: %s", result.message)
        else:
            logger.warning("Maystro webhook processing failed: %s", result.message)
        # 200 either way so Maystro doesn't retry
        return JSONResponse(result.to_dict(), status_code=200)

    except Exception as exc:
        logger.exception("Error handling Maystro webhook")
        await asyncio.to_thread(
            audit_log.record,
            source=SOURCE_MAYSTRO,
            event_type=EVENT_ERROR,
            payload={
                "error": str(exc),
                "body": body.decode("utf-8", errors="replace"),
                "headers": headers,
            },
            processed=False,
            error=str(exc),
        )
        return JSONResponse({"success": False, "error": "Internal server error"}, status_code=200)


def list_webhook_events(
    request: Request,
    page: int = 1,
    limit: int = 25,
    source: str = SOURCE_MAYSTRO,
    processed: bool | None = None,
    eventType: str | None = None,  # noqa: N803 (query parameter name)
) -> JSONResponse:
    audit_log: AuditLog = request.app.state.audit_log
    data = audit_log.list_events(
        source=source, processed=processed, event_type=eventType, page=page, limit=limit
    )
    return JSONResponse({"success": True, "data": data})


def retry_webhook_event(request: Request, event_id: str) -> JSONResponse:
    reconciler: ShippingReconciler = request.app.state.shipping_reconciler
    try:
        result = reconciler.retry(event_id)
    except OrderSyncError as exc:
        return _error_response(exc)
    return JSONResponse(
        {
            "success": True,
            "data": result.to_dict(),
            "message": "Webhook event processed successfully"
            if result.success
            else "Webhook event processing failed",
        }
    )


def delete_webhook_event(request: Request, event_id: str) -> JSONResponse:
    audit_log: AuditLog = request.app.state.audit_log
    try:
        event = audit_log.delete_event(event_id)
    except OrderSyncError as exc:
        return _error_response(exc)
    return JSONResponse(
        {"success": True, "data": event.to_dict(), "message": "Webhook event deleted successfully"}
    )


def webhook_stats(
    request: Request, source: str = SOURCE_MAYSTRO, period: str = DEFAULT_STATS_PERIOD
) -> JSONResponse:
    audit_log: AuditLog = request.app.state.audit_log
    return JSONResponse({"success": True, "data": audit_log.stats(source=source, period=period)})


def register_shipping_routes(app: FastAPI) -> None:
    """Register the Maystro webhook endpoint and audit log routes."""
    app.add_api_route("/webhooks/shipping", handle_shipping_webhook, methods=["POST"])
    app.add_api_route("/webhooks/shipping/events", list_webhook_events, methods=["GET"])
    app.add_api_route(
        "/webhooks/shipping/events/{event_id}/retry", retry_webhook_event, methods=["POST"]
    )
    app.add_api_route("/webhooks/shipping/events/{event_id}", delete_webhook_event, methods=["DELETE"])
    app.add_api_route("/webhooks/shipping/stats", webhook_stats, methods=["GET"])
    logger.info("Webhook routes registered: /webhooks/shipping")
