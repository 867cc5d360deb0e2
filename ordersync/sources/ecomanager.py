"""EcoManager shop API client.

Pulls order pages from ``{base_url}/orders`` (newest first) with a bearer
token. A page shorter than ``per_page`` is the last one. Transient failures
are retried with backoff; anything left over surfaces as UpstreamError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

import httpx
from pydantic import BaseModel, Field, field_validator

from ordersync.errors import UpstreamError
from ordersync.models import (
    SOURCE_ECOMANAGER,
    ApiConfiguration,
    Order,
    OrderItem,
    map_ecomanager_status,
)
from ordersync.phone import normalize_phone
from ordersync.sources.retry import call_with_backoff

logger = logging.getLogger(__name__)


# ── Wire models ───────────────────────────────────────────────────────────


class EcoManagerItem(BaseModel):
    product_id: str
    title: str = ""
    quantity: int = 1
    sku: str | None = None
    unit_price: float | None = None
    total_price: float | None = None

    @field_validator("product_id", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class EcoManagerOrder(BaseModel):
    """One order as returned by GET /orders."""

    id: int
    reference: str | None = None
    full_name: str = ""
    telephone: str = ""
    wilaya: str = ""
    commune: str = ""
    total: float = 0.0
    items: list[EcoManagerItem] = Field(default_factory=list)
    order_state_name: str | None = None
    confirmation_state_name: str | None = None
    confirmation_history: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime | None = None

    model_config = {"extra": "ignore"}


@dataclass
class CustomerData:
    full_name: str
    telephone: str
    wilaya: str
    commune: str


@dataclass
class MappedOrder:
    """A source order translated to a local Order plus its customer details."""

    order: Order
    customer: CustomerData


def map_order(raw: dict[str, Any], store_identifier: str) -> MappedOrder:
    """Translate a raw EcoManager order.

    Raises:
        pydantic.ValidationError: required fields missing or mistyped
        ValueError: malformed customer phone number
    """
    eco = EcoManagerOrder.model_validate(raw)
    history = eco.confirmation_history
    items = [
        OrderItem(
            product_id=i.product_id,
            sku=i.sku,
            title=i.title,
            quantity=i.quantity,
            unit_price=float(i.unit_price or 0),
            total_price=float(
                i.total_price if i.total_price is not None else (i.unit_price or 0) * i.quantity
            ),
        )
        for i in eco.items
    ]
    order = Order(
        ecomanager_id=str(eco.id),
        reference=eco.reference or f"ECO-{eco.id}",
        source=SOURCE_ECOMANAGER,
        store_identifier=store_identifier,
        status=map_ecomanager_status(eco.order_state_name),
        ecomanager_status=eco.order_state_name,
        total=eco.total,
        items=items,
        order_date=eco.created_at,
        metadata={
            "ecoManagerConfirmationHistory": history,
            "lastConfirmation": history[-1].get("state_name") if history else None,
        },
    )
    customer = CustomerData(
        full_name=eco.full_name,
        telephone=normalize_phone(eco.telephone),
        wilaya=eco.wilaya,
        commune=eco.commune,
    )
    return MappedOrder(order=order, customer=customer)


# ── Client ────────────────────────────────────────────────────────────────


class EcoManagerClient:
    """Paginated reader for one store's EcoManager API."""

    def __init__(
        self,
        *,
        store_name: str,
        store_identifier: str,
        api_token: str,
        base_url: str,
        page_size: int = 100,
        max_pages: int = 1000,
        max_retries: int = 3,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.store_name = store_name
        self.store_identifier = store_identifier
        self.page_size = page_size
        self.max_pages = max_pages
        self._max_retries = max_retries
        self._sleep = sleep
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_token}",
                "Accept": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> EcoManagerClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _get_orders(self, page: int, per_page: int) -> httpx.Response:
        response = self._http.get(
            "/orders", params={"page": page, "per_page": per_page, "sort": "-id"}
        )
        response.raise_for_status()
        return response

    def fetch_orders_page(self, page: int = 1, per_page: int | None = None) -> list[dict[str, Any]]:
        """One page of raw orders, newest first."""
        per_page = per_page or self.page_size
        kwargs: dict[str, Any] = {"max_retries": self._max_retries, "label": f"orders page {page}"}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        try:
            response = call_with_backoff(lambda: self._get_orders(page, per_page), **kwargs)
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Error fetching orders page %d for %s: %s", page, self.store_name, exc)
            raise UpstreamError(
                f"Failed to fetch orders from EcoManager for {self.store_name}: {exc}"
            ) from exc
        data = body.get("data", []) if isinstance(body, dict) else body
        return data if isinstance(data, list) else []

    def fetch_all_orders(self) -> list[dict[str, Any]]:
        """Walk every page until a short page."""
        orders: list[dict[str, Any]] = []
        logger.info("Starting full import for %s", self.store_name)
        for page in range(1, self.max_pages + 1):
            batch = self.fetch_orders_page(page)
            orders.extend(batch)
            if page % 10 == 0:
                logger.info("Progress: %d orders fetched for %s (page %d)", len(orders), self.store_name, page)
            if len(batch) < self.page_size:
                break
        else:
            logger.warning("Stopped %s import at max_pages=%d", self.store_name, self.max_pages)
        logger.info("Completed full import for %s: %d orders", self.store_name, len(orders))
        return orders

    def fetch_new_orders(self, last_order_id: int) -> list[dict[str, Any]]:
        """Orders with id > ``last_order_id``, oldest first.

        Pages are sorted by id descending, so paging stops at the first page
        that reaches the cursor.
        """
        new_orders: list[dict[str, Any]] = []
        for page in range(1, self.max_pages + 1):
            batch = self.fetch_orders_page(page)
            reached_cursor = False
            for raw in batch:
                order_id = _order_id(raw)
                if order_id is None:
                    continue
                if order_id > last_order_id:
                    new_orders.append(raw)
                else:
                    reached_cursor = True
            if reached_cursor or len(batch) < self.page_size:
                break
        new_orders.sort(key=lambda o: _order_id(o) or 0)
        logger.info(
            "Found %d new orders after id %d for %s", len(new_orders), last_order_id, self.store_name
        )
        return new_orders

    def test_connection(self) -> bool:
        try:
            response = self._http.get("/orders", params={"per_page": 1, "page": 1})
            return response.status_code == 200
        except httpx.HTTPError as exc:
            logger.error("Connection test failed for %s: %s", self.store_name, exc)
            return False


def _order_id(raw: dict[str, Any]) -> int | None:
    try:
        return int(raw.get("id"))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


ClientFactory = Callable[[ApiConfiguration], EcoManagerClient]


def make_client_factory(
    *,
    default_base_url: str,
    page_size: int = 100,
    max_pages: int = 1000,
    max_retries: int = 3,
    timeout: float = 30.0,
) -> ClientFactory:
    """Build EcoManagerClient instances from stored ApiConfiguration rows."""

    def _factory(config: ApiConfiguration) -> EcoManagerClient:
        return EcoManagerClient(
            store_name=config.store_name,
            store_identifier=config.store_identifier,
            api_token=config.api_token,
            base_url=config.base_url or default_base_url,
            page_size=page_size,
            max_pages=max_pages,
            max_retries=max_retries,
            timeout=timeout,
        )

    return _factory
