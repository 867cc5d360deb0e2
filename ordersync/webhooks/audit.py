"""Event Audit Log: append-only record of inbound webhook attempts.

Every Maystro delivery leaves exactly one entry: processed when it updated
an order, unprocessed with an error otherwise. Unprocessed entries keep the
raw payload so they can be retried. Writing an entry never raises; a
database failure here is logged and the caller carries on.
"""

from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Any

from ordersync.errors import EventNotFoundError
from ordersync.models import SOURCE_MAYSTRO, WebhookEvent, utcnow
from ordersync.store.base import WebhookEventRepository

logger = logging.getLogger(__name__)

STATS_PERIODS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_STATS_PERIOD = "7d"


class AuditLog:
    def __init__(self, events: WebhookEventRepository) -> None:
        self._events = events

    def record(
        self,
        *,
        source: str,
        event_type: str,
        payload: Any,
        processed: bool,
        error: str | None = None,
        order_id: str | None = None,
    ) -> WebhookEvent | None:
        """Append one entry. Returns None if it could not be stored."""
        event = WebhookEvent(
            source=source,
            event_type=event_type,
            payload=payload,
            processed=processed,
            error=error,
            order_id=order_id,
        )
        try:
            return self._events.create(event)
        except Exception:
            logger.exception("Error saving webhook event to database (%s/%s)", source, event_type)
            return None

    def get(self, event_id: str) -> WebhookEvent:
        event = self._events.get(event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        return event

    def mark_result(self, event_id: str, processed: bool, error: str | None) -> None:
        self._events.mark_result(event_id, processed, None if processed else error)

    def delete_event(self, event_id: str) -> WebhookEvent:
        event = self.get(event_id)
        self._events.delete(event_id)
        logger.info("Webhook event deleted: %s", event_id)
        return event

    def list_events(
        self,
        *,
        source: str | None = SOURCE_MAYSTRO,
        processed: bool | None = None,
        event_type: str | None = None,
        page: int = 1,
        limit: int = 25,
    ) -> dict[str, Any]:
        page = max(page, 1)
        limit = max(limit, 1)
        events, total = self._events.list(
            source=source,
            processed=processed,
            event_type=event_type,
            offset=(page - 1) * limit,
            limit=limit,
        )
        total_pages = math.ceil(total / limit)
        return {
            "events": [e.to_dict() for e in events],
            "pagination": {
                "currentPage": page,
                "totalPages": total_pages,
                "totalCount": total,
                "limit": limit,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
        }

    def stats(self, source: str = SOURCE_MAYSTRO, period: str = DEFAULT_STATS_PERIOD) -> dict[str, Any]:
        """Totals and success rate over the last 24h, 7d, or 30d."""
        if period not in STATS_PERIODS:
            period = DEFAULT_STATS_PERIOD
        since = utcnow() - STATS_PERIODS[period]
        total, processed, by_type = self._events.counts(source, since)
        return {
            "totalEvents": total,
            "processedEvents": processed,
            "failedEvents": total - processed,
            "successRate": round(processed / total * 100) if total else 0,
            "eventsByType": [
                {"eventType": event_type, "count": count}
                for event_type, count in sorted(by_type.items())
            ],
            "period": period,
        }
