"""In-memory repositories.

Same contracts as the Postgres backend, including unique keys, so tests can
exercise idempotency without a database. Records are deep-copied in and out
so callers never share mutable state with the store. Every read and write
holds the repository lock.
"""

from __future__ import annotations

import copy
import threading
from collections import Counter
from datetime import datetime

from ordersync.errors import DuplicateRecordError
from ordersync.models import (
    SOURCE_ECOMANAGER,
    ApiConfiguration,
    Customer,
    Order,
    OrderConfirmation,
    WebhookConfiguration,
    WebhookEvent,
    utcnow,
)
from ordersync.store.base import Repositories


class InMemoryOrderRepository:
    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = threading.Lock()

    def _snapshot(self) -> list[Order]:
        with self._lock:
            return list(self._orders.values())

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order else None

    def get_by_ecomanager_id(self, ecomanager_id: str) -> Order | None:
        for order in self._snapshot():
            if order.ecomanager_id == ecomanager_id:
                return copy.deepcopy(order)
        return None

    def get_by_reference(self, reference: str) -> Order | None:
        for order in self._snapshot():
            if order.reference == reference:
                return copy.deepcopy(order)
        return None

    def find_for_store(self, ecomanager_order_id: int, store_identifier: str) -> Order | None:
        candidates = {str(ecomanager_order_id), f"{store_identifier}{ecomanager_order_id}"}
        for order in self._snapshot():
            if order.store_identifier == store_identifier and order.ecomanager_id in candidates:
                return copy.deepcopy(order)
        return None

    def max_ecomanager_id(self, store_identifier: str, source: str = SOURCE_ECOMANAGER) -> int:
        ids = [
            int(o.ecomanager_id)
            for o in self._snapshot()
            if o.store_identifier == store_identifier
            and o.source == source
            and o.ecomanager_id
            and o.ecomanager_id.isdigit()
        ]
        return max(ids, default=0)

    def create(self, order: Order) -> Order:
        with self._lock:
            for existing in self._orders.values():
                if (
                    order.ecomanager_id is not None
                    and existing.ecomanager_id == order.ecomanager_id
                    and existing.source == order.source
                ):
                    raise DuplicateRecordError(f"Order {order.ecomanager_id} already exists")
                if existing.reference == order.reference:
                    raise DuplicateRecordError(f"Order reference {order.reference} already exists")
            self._orders[order.id] = copy.deepcopy(order)
        return copy.deepcopy(order)

    def update_shipping(
        self, order_id: str, shipping_status: str, tracking_number: str | None
    ) -> None:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return
            order.shipping_status = shipping_status
            order.tracking_number = tracking_number
            order.updated_at = utcnow()

    def count(self, store_identifier: str | None = None, since: datetime | None = None) -> int:
        return sum(
            1
            for o in self._snapshot()
            if (store_identifier is None or o.store_identifier == store_identifier)
            and (since is None or o.created_at >= since)
        )

    def last_created_at(self, store_identifier: str) -> datetime | None:
        dates = [o.created_at for o in self._snapshot() if o.store_identifier == store_identifier]
        return max(dates, default=None)


class InMemoryCustomerRepository:
    def __init__(self) -> None:
        self._customers: dict[str, Customer] = {}
        self._lock = threading.Lock()

    def find_by_phone(self, telephone: str) -> Customer | None:
        with self._lock:
            for customer in self._customers.values():
                if customer.telephone == telephone:
                    return copy.deepcopy(customer)
        return None

    def create(self, customer: Customer) -> Customer:
        with self._lock:
            if any(c.telephone == customer.telephone for c in self._customers.values()):
                raise DuplicateRecordError(f"Customer {customer.telephone} already exists")
            self._customers[customer.id] = copy.deepcopy(customer)
        return copy.deepcopy(customer)

    def increment_orders(self, customer_id: str) -> None:
        with self._lock:
            if customer_id in self._customers:
                self._customers[customer_id].total_orders += 1


class InMemoryConfirmationRepository:
    def __init__(self) -> None:
        self._rows: dict[int, OrderConfirmation] = {}
        self._lock = threading.Lock()

    def find_by_external_id(self, ecomanager_order_id: int) -> OrderConfirmation | None:
        with self._lock:
            row = self._rows.get(ecomanager_order_id)
            return copy.deepcopy(row) if row else None

    def find_by_order_id(self, order_id: str) -> OrderConfirmation | None:
        with self._lock:
            for row in self._rows.values():
                if row.order_id == order_id:
                    return copy.deepcopy(row)
        return None

    def create(self, confirmation: OrderConfirmation) -> OrderConfirmation:
        with self._lock:
            existing = self._rows.get(confirmation.ecomanager_order_id)
            if existing is not None:
                return copy.deepcopy(existing)
            self._rows[confirmation.ecomanager_order_id] = copy.deepcopy(confirmation)
        return copy.deepcopy(confirmation)

    def update(self, confirmation: OrderConfirmation) -> OrderConfirmation:
        confirmation.updated_at = utcnow()
        with self._lock:
            self._rows[confirmation.ecomanager_order_id] = copy.deepcopy(confirmation)
        return copy.deepcopy(confirmation)

    def link_to_order(self, ecomanager_order_id: int, order_id: str) -> bool:
        with self._lock:
            row = self._rows.get(ecomanager_order_id)
            if row is None or row.order_id:
                return False
            row.order_id = order_id
            row.updated_at = utcnow()
            return True

    def all(self) -> list[OrderConfirmation]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._rows.values()]


class InMemoryWebhookConfigRepository:
    def __init__(self, configs: list[WebhookConfiguration] | None = None) -> None:
        self._configs: dict[str, WebhookConfiguration] = {}
        self._lock = threading.Lock()
        for config in configs or []:
            self.add(config)

    def add(self, config: WebhookConfiguration) -> None:
        with self._lock:
            self._configs[config.id] = copy.deepcopy(config)

    def get_by_webhook_id(self, ecomanager_webhook_id: int) -> WebhookConfiguration | None:
        with self._lock:
            for config in self._configs.values():
                if config.ecomanager_webhook_id == ecomanager_webhook_id:
                    return copy.deepcopy(config)
        return None

    def touch_last_triggered(self, config_id: str, at: datetime) -> None:
        with self._lock:
            if config_id in self._configs:
                self._configs[config_id].last_triggered = at


class InMemoryWebhookEventRepository:
    def __init__(self) -> None:
        self._events: dict[str, WebhookEvent] = {}
        self._lock = threading.Lock()

    def create(self, event: WebhookEvent) -> WebhookEvent:
        with self._lock:
            self._events[event.id] = copy.deepcopy(event)
        return copy.deepcopy(event)

    def get(self, event_id: str) -> WebhookEvent | None:
        with self._lock:
            event = self._events.get(event_id)
            return copy.deepcopy(event) if event else None

    def mark_result(self, event_id: str, processed: bool, error: str | None) -> None:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                return
            event.processed = processed
            event.error = error
            event.updated_at = utcnow()

    def delete(self, event_id: str) -> bool:
        with self._lock:
            return self._events.pop(event_id, None) is not None

    def list(
        self,
        *,
        source: str | None = None,
        processed: bool | None = None,
        event_type: str | None = None,
        offset: int = 0,
        limit: int = 25,
    ) -> tuple[list[WebhookEvent], int]:
        with self._lock:
            events = list(self._events.values())
        matching = [
            e
            for e in events
            if (source is None or e.source == source)
            and (processed is None or e.processed == processed)
            and (event_type is None or e.event_type == event_type)
        ]
        matching.sort(key=lambda e: e.created_at, reverse=True)
        page = matching[offset : offset + limit]
        return [copy.deepcopy(e) for e in page], len(matching)

    def counts(self, source: str, since: datetime) -> tuple[int, int, dict[str, int]]:
        with self._lock:
            events = list(self._events.values())
        window = [e for e in events if e.source == source and e.created_at >= since]
        processed = sum(1 for e in window if e.processed)
        by_type = Counter(e.event_type for e in window)
        return len(window), processed, dict(by_type)


class InMemoryApiConfigRepository:
    def __init__(self, configs: list[ApiConfiguration] | None = None) -> None:
        self._configs: dict[str, ApiConfiguration] = {}
        self._lock = threading.Lock()
        for config in configs or []:
            self.add(config)

    def add(self, config: ApiConfiguration) -> None:
        with self._lock:
            self._configs[config.store_identifier] = copy.deepcopy(config)

    def get(self, store_identifier: str) -> ApiConfiguration | None:
        with self._lock:
            config = self._configs.get(store_identifier)
            return copy.deepcopy(config) if config else None

    def list_active(self) -> list[ApiConfiguration]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._configs.values() if c.is_active]

    def record_usage(self, store_identifier: str, increment: int, at: datetime) -> None:
        with self._lock:
            config = self._configs.get(store_identifier)
            if config is not None:
                config.request_count += increment
                config.last_used = at


def create_memory_repositories() -> Repositories:
    return Repositories(
        orders=InMemoryOrderRepository(),
        customers=InMemoryCustomerRepository(),
        confirmations=InMemoryConfirmationRepository(),
        webhook_configs=InMemoryWebhookConfigRepository(),
        webhook_events=InMemoryWebhookEventRepository(),
        api_configs=InMemoryApiConfigRepository(),
    )
