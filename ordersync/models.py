"""Order ingestion data models.

Records shared by the puller and both webhook gateways. External ids from
EcoManager are digit strings on Order and ints on OrderConfirmation, matching
what each side receives over the wire.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

SOURCE_ECOMANAGER = "ECOMANAGER"
SOURCE_MAYSTRO = "MAYSTRO"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class OrderStatus(str, Enum):
    """Local order lifecycle."""
    PENDING = "PENDING"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"  # terminal
    RETURNED = "RETURNED"  # terminal


# EcoManager order_state_name -> local status
ECOMANAGER_STATUS_MAP: dict[str, OrderStatus] = {
    "En dispatch": OrderStatus.PENDING,
    "Confirmé": OrderStatus.CONFIRMED,
    "En cours": OrderStatus.IN_PROGRESS,
    "Expédié": OrderStatus.SHIPPED,
    "Livré": OrderStatus.DELIVERED,
    "Annulé": OrderStatus.CANCELLED,
    "Retourné": OrderStatus.RETURNED,
}


def map_ecomanager_status(state_name: str | None) -> OrderStatus:
    return ECOMANAGER_STATUS_MAP.get(state_name or "", OrderStatus.PENDING)


@dataclass
class OrderItem:
    product_id: str
    title: str
    quantity: int
    sku: str | None = None
    unit_price: float = 0.0
    total_price: float = 0.0


@dataclass
class Customer:
    full_name: str
    telephone: str
    wilaya: str = ""
    commune: str = ""
    total_orders: int = 1
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Order:
    """Local record of a purchase."""
    reference: str
    store_identifier: str
    ecomanager_id: str | None = None
    source: str = SOURCE_ECOMANAGER
    status: OrderStatus = OrderStatus.PENDING
    shipping_status: str | None = None
    tracking_number: str | None = None
    ecomanager_status: str | None = None
    total: float = 0.0
    items: list[OrderItem] = field(default_factory=list)
    customer_id: str | None = None
    order_date: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["status"] = self.status.value
        return d


@dataclass
class OrderConfirmation:
    """Current call-center state for one EcoManager order.

    Overwritten in place on every change; prior states are not kept.
    """
    ecomanager_order_id: int
    order_reference: str
    store_identifier: str
    order_id: str | None = None
    confirmator_id: int | None = None
    confirmator_name: str | None = None
    confirmation_state: str | None = None
    order_state: str | None = None
    confirmed_at: datetime | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class WebhookConfiguration:
    ecomanager_webhook_id: int
    webhook_secret: str
    store_identifier: str
    last_triggered: datetime | None = None
    id: str = field(default_factory=new_id)


@dataclass
class WebhookEvent:
    """Audit entry for one inbound webhook attempt."""
    source: str
    event_type: str
    payload: Any
    processed: bool = False
    error: str | None = None
    order_id: str | None = None
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "eventType": self.event_type,
            "payload": self.payload,
            "processed": self.processed,
            "error": self.error,
            "orderId": self.order_id,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class ApiConfiguration:
    """Per-store EcoManager credentials and usage telemetry."""
    store_name: str
    store_identifier: str
    api_token: str
    base_url: str | None = None
    is_active: bool = True
    request_count: int = 0
    last_used: datetime | None = None
    id: str = field(default_factory=new_id)


@dataclass
class SyncStatus:
    store_identifier: str
    store_name: str
    last_order_id: int
    total_synced: int
    last_sync: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @staticmethod
    def from_dict(d: dict[str, Any]) -> SyncStatus:
        return SyncStatus(**{k: v for k, v in d.items() if k in SyncStatus.__dataclass_fields__})
