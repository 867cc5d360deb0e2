"""Error taxonomy for the ingestion core.

Each error carries the HTTP status the gateways map it to. Gateways never
let these escape to the sender as a crash; the puller records them per order
or per store.
"""

from __future__ import annotations


class OrderSyncError(Exception):
    """Base exception for ordersync errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class WebhookValidationError(OrderSyncError):
    """Missing headers or an unusable request body."""

    status_code = 400


class SignatureError(OrderSyncError):
    """Webhook signature did not match the configured secret."""

    status_code = 401

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


class WebhookNotConfiguredError(OrderSyncError):
    """No WebhookConfiguration for the sender's webhook id."""

    status_code = 404

    def __init__(self, webhook_id: str) -> None:
        super().__init__(f"Webhook not configured: {webhook_id}")
        self.webhook_id = webhook_id


class StoreNotConfiguredError(OrderSyncError):
    """Store has no API configuration, or it is inactive."""

    status_code = 404

    def __init__(self, store_identifier: str) -> None:
        super().__init__(
            f"Store configuration not found or inactive: {store_identifier}"
        )
        self.store_identifier = store_identifier


class EventNotFoundError(OrderSyncError):
    status_code = 404

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Webhook event not found: {event_id}")
        self.event_id = event_id


class EventAlreadyProcessedError(OrderSyncError):
    status_code = 400

    def __init__(self, event_id: str) -> None:
        super().__init__("Webhook event already processed")
        self.event_id = event_id


class UpstreamError(OrderSyncError):
    """Transient failure talking to the source system."""

    status_code = 502


class DuplicateRecordError(OrderSyncError):
    """A unique key (external order id, reference, phone) already exists."""

    status_code = 409
