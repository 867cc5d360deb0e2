"""Repository interfaces.

Every component receives its repositories through its constructor. Two
backends implement these protocols: ``postgres`` (psycopg) for production
and ``memory`` for tests and local runs.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from ordersync.models import (
    SOURCE_ECOMANAGER,
    ApiConfiguration,
    Customer,
    Order,
    OrderConfirmation,
    WebhookConfiguration,
    WebhookEvent,
)


class OrderRepository(Protocol):
    def get(self, order_id: str) -> Order | None: ...

    def get_by_ecomanager_id(self, ecomanager_id: str) -> Order | None: ...

    def get_by_reference(self, reference: str) -> Order | None: ...

    def find_for_store(self, ecomanager_order_id: int, store_identifier: str) -> Order | None:
        """Match by plain id or store-prefixed id, within one store."""
        ...

    def max_ecomanager_id(self, store_identifier: str, source: str = SOURCE_ECOMANAGER) -> int:
        """Highest external id for the store, ordered numerically. 0 if none."""
        ...

    def create(self, order: Order) -> Order: ...

    def update_shipping(
        self, order_id: str, shipping_status: str, tracking_number: str | None
    ) -> None: ...

    def count(self, store_identifier: str | None = None, since: datetime | None = None) -> int: ...

    def last_created_at(self, store_identifier: str) -> datetime | None: ...


class CustomerRepository(Protocol):
    def find_by_phone(self, telephone: str) -> Customer | None: ...

    def create(self, customer: Customer) -> Customer: ...

    def increment_orders(self, customer_id: str) -> None: ...


class ConfirmationRepository(Protocol):
    """Confirmation State Store. No history: updates overwrite."""

    def find_by_external_id(self, ecomanager_order_id: int) -> OrderConfirmation | None: ...

    def find_by_order_id(self, order_id: str) -> OrderConfirmation | None: ...

    def create(self, confirmation: OrderConfirmation) -> OrderConfirmation:
        """Insert, or return the existing row for the same external id."""
        ...

    def update(self, confirmation: OrderConfirmation) -> OrderConfirmation: ...

    def link_to_order(self, ecomanager_order_id: int, order_id: str) -> bool:
        """Set order_id when the row exists and is unlinked. Returns True if linked."""
        ...


class WebhookConfigRepository(Protocol):
    def get_by_webhook_id(self, ecomanager_webhook_id: int) -> WebhookConfiguration | None: ...

    def touch_last_triggered(self, config_id: str, at: datetime) -> None: ...


class WebhookEventRepository(Protocol):
    """Event Audit Log storage. Entries are only ever appended or re-marked."""

    def create(self, event: WebhookEvent) -> WebhookEvent: ...

    def get(self, event_id: str) -> WebhookEvent | None: ...

    def mark_result(self, event_id: str, processed: bool, error: str | None) -> None: ...

    def delete(self, event_id: str) -> bool: ...

    def list(
        self,
        *,
        source: str | None = None,
        processed: bool | None = None,
        event_type: str | None = None,
        offset: int = 0,
        limit: int = 25,
    ) -> tuple[list[WebhookEvent], int]:
        """Newest first. Returns (page, total matching)."""
        ...

    def counts(self, source: str, since: datetime) -> tuple[int, int, dict[str, int]]:
        """Returns (total, processed, count per event type) since ``since``."""
        ...


class ApiConfigRepository(Protocol):
    def get(self, store_identifier: str) -> ApiConfiguration | None: ...

    def list_active(self) -> list[ApiConfiguration]: ...

    def record_usage(self, store_identifier: str, increment: int, at: datetime) -> None: ...


@dataclass
class Repositories:
    """Bundle handed to services and the app factory."""

    orders: OrderRepository
    customers: CustomerRepository
    confirmations: ConfirmationRepository
    webhook_configs: WebhookConfigRepository
    webhook_events: WebhookEventRepository
    api_configs: ApiConfigRepository
