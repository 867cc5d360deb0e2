"""Postgres repositories (psycopg 3).

Each repository takes a connection factory and opens a short-lived
autocommit connection per call. Unique keys live in the schema, so
idempotency survives concurrent webhook deliveries across processes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from ordersync.errors import DuplicateRecordError
from ordersync.models import (
    SOURCE_ECOMANAGER,
    ApiConfiguration,
    Customer,
    Order,
    OrderConfirmation,
    OrderItem,
    OrderStatus,
    WebhookConfiguration,
    WebhookEvent,
    utcnow,
)
from ordersync.store.base import Repositories

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], psycopg.Connection]


def make_connection_factory(database_url: str) -> ConnectionFactory:
    def _get_conn() -> psycopg.Connection:
        return psycopg.connect(database_url, autocommit=True, row_factory=dict_row)

    return _get_conn


# ── Schema ────────────────────────────────────────────────────────────────

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS customers (
        id            TEXT PRIMARY KEY,
        full_name     TEXT NOT NULL,
        telephone     TEXT NOT NULL UNIQUE,
        wilaya        TEXT DEFAULT '',
        commune       TEXT DEFAULT '',
        total_orders  INT NOT NULL DEFAULT 1,
        created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                 TEXT PRIMARY KEY,
        ecomanager_id      TEXT,
        reference          TEXT NOT NULL UNIQUE,
        source             TEXT NOT NULL DEFAULT 'ECOMANAGER',
        store_identifier   TEXT NOT NULL,
        status             TEXT NOT NULL DEFAULT 'PENDING',
        shipping_status    TEXT,
        tracking_number    TEXT,
        ecomanager_status  TEXT,
        total              NUMERIC(12, 2) NOT NULL DEFAULT 0,
        items              JSONB NOT NULL DEFAULT '[]',
        customer_id        TEXT REFERENCES customers (id),
        order_date         TIMESTAMPTZ,
        metadata           JSONB NOT NULL DEFAULT '{}',
        created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (source, ecomanager_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_store ON orders (store_identifier, source)",
    """
    CREATE TABLE IF NOT EXISTS order_confirmations (
        id                   TEXT PRIMARY KEY,
        ecomanager_order_id  BIGINT NOT NULL UNIQUE,
        order_reference      TEXT NOT NULL,
        store_identifier     TEXT NOT NULL,
        order_id             TEXT UNIQUE REFERENCES orders (id),
        confirmator_id       BIGINT,
        confirmator_name     TEXT,
        confirmation_state   TEXT,
        order_state          TEXT,
        confirmed_at         TIMESTAMPTZ,
        created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at           TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_configurations (
        id                     TEXT PRIMARY KEY,
        ecomanager_webhook_id  BIGINT NOT NULL UNIQUE,
        webhook_secret         TEXT NOT NULL,
        store_identifier       TEXT NOT NULL,
        last_triggered         TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        id          TEXT PRIMARY KEY,
        source      TEXT NOT NULL,
        event_type  TEXT NOT NULL,
        payload     JSONB NOT NULL,
        processed   BOOLEAN NOT NULL DEFAULT FALSE,
        error       TEXT,
        order_id    TEXT REFERENCES orders (id) ON DELETE SET NULL,
        created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at  TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_webhook_events_source ON webhook_events (source, created_at)",
    """
    CREATE TABLE IF NOT EXISTS api_configurations (
        id                TEXT PRIMARY KEY,
        store_name        TEXT NOT NULL,
        store_identifier  TEXT NOT NULL UNIQUE,
        api_token         TEXT NOT NULL,
        base_url          TEXT,
        is_active         BOOLEAN NOT NULL DEFAULT TRUE,
        request_count     INT NOT NULL DEFAULT 0,
        last_used         TIMESTAMPTZ
    )
    """,
]


def init_schema(connect: ConnectionFactory) -> None:
    """Create tables if they don't exist.  Idempotent."""
    with connect() as conn:
        for statement in _SCHEMA:
            conn.execute(statement)
    logger.info("ordersync tables initialized")


# ── Row mapping ───────────────────────────────────────────────────────────


def _order_from_row(row: dict[str, Any]) -> Order:
    items = row.get("items") or []
    return Order(
        id=row["id"],
        ecomanager_id=row["ecomanager_id"],
        reference=row["reference"],
        source=row["source"],
        store_identifier=row["store_identifier"],
        status=OrderStatus(row["status"]),
        shipping_status=row["shipping_status"],
        tracking_number=row["tracking_number"],
        ecomanager_status=row["ecomanager_status"],
        total=float(row["total"] or 0),
        items=[OrderItem(**i) for i in items],
        customer_id=row["customer_id"],
        order_date=row["order_date"],
        metadata=row.get("metadata") or {},
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _confirmation_from_row(row: dict[str, Any]) -> OrderConfirmation:
    return OrderConfirmation(**row)


def _event_from_row(row: dict[str, Any]) -> WebhookEvent:
    return WebhookEvent(**row)


# ── Repositories ──────────────────────────────────────────────────────────


class PostgresOrderRepository:
    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def _fetch_one(self, sql: str, params: tuple) -> Order | None:
        with self._connect() as conn:
            row = conn.execute(sql, params).fetchone()
        return _order_from_row(row) if row else None

    def get(self, order_id: str) -> Order | None:
        return self._fetch_one("SELECT * FROM orders WHERE id = %s", (order_id,))

    def get_by_ecomanager_id(self, ecomanager_id: str) -> Order | None:
        return self._fetch_one(
            "SELECT * FROM orders WHERE ecomanager_id = %s LIMIT 1", (ecomanager_id,)
        )

    def get_by_reference(self, reference: str) -> Order | None:
        return self._fetch_one("SELECT * FROM orders WHERE reference = %s", (reference,))

    def find_for_store(self, ecomanager_order_id: int, store_identifier: str) -> Order | None:
        return self._fetch_one(
            """SELECT * FROM orders
               WHERE store_identifier = %s
                 AND ecomanager_id IN (%s, %s)
               LIMIT 1""",
            (store_identifier, str(ecomanager_order_id), f"{store_identifier}{ecomanager_order_id}"),
        )

    def max_ecomanager_id(self, store_identifier: str, source: str = SOURCE_ECOMANAGER) -> int:
        # ecomanager_id is TEXT: order numerically, not lexicographically
        with self._connect() as conn:
            row = conn.execute(
                """SELECT ecomanager_id
                   FROM orders
                   WHERE store_identifier = %s
                     AND source = %s
                     AND ecomanager_id ~ '^[0-9]+$'
                   ORDER BY CAST(ecomanager_id AS BIGINT) DESC
                   LIMIT 1""",
                (store_identifier, source),
            ).fetchone()
        return int(row["ecomanager_id"]) if row else 0

    def create(self, order: Order) -> Order:
        try:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO orders
                       (id, ecomanager_id, reference, source, store_identifier, status,
                        shipping_status, tracking_number, ecomanager_status, total, items,
                        customer_id, order_date, metadata, created_at, updated_at)
                       VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                    (
                        order.id,
                        order.ecomanager_id,
                        order.reference,
                        order.source,
                        order.store_identifier,
                        order.status.value,
                        order.shipping_status,
                        order.tracking_number,
                        order.ecomanager_status,
                        order.total,
                        json.dumps([asdict(i) for i in order.items]),
                        order.customer_id,
                        order.order_date,
                        json.dumps(order.metadata, default=str),
                        order.created_at,
                        order.updated_at,
                    ),
                )
        except pg_errors.UniqueViolation as exc:
            raise DuplicateRecordError(f"Order {order.ecomanager_id or order.reference} already exists") from exc
        return order

    def update_shipping(
        self, order_id: str, shipping_status: str, tracking_number: str | None
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """UPDATE orders
                   SET shipping_status = %s, tracking_number = %s, updated_at = now()
                   WHERE id = %s""",
                (shipping_status, tracking_number, order_id),
            )

    def count(self, store_identifier: str | None = None, since: datetime | None = None) -> int:
        clauses, params = [], []
        if store_identifier is not None:
            clauses.append("store_identifier = %s")
            params.append(store_identifier)
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            row = conn.execute(f"SELECT count(*) AS n FROM orders {where}", tuple(params)).fetchone()
        return row["n"] if row else 0

    def last_created_at(self, store_identifier: str) -> datetime | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT max(created_at) AS last FROM orders WHERE store_identifier = %s",
                (store_identifier,),
            ).fetchone()
        return row["last"] if row else None


class PostgresCustomerRepository:
    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def find_by_phone(self, telephone: str) -> Customer | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM customers WHERE telephone = %s", (telephone,)
            ).fetchone()
        return Customer(**row) if row else None

    def create(self, customer: Customer) -> Customer:
        try:
            with self._connect() as conn:
                conn.execute(
                    """INSERT INTO customers
                       (id, full_name, telephone, wilaya, commune, total_orders, created_at)
                       VALUES (%s, %s, %s, %s, %s, %s, %s)""",
                    (
                        customer.id,
                        customer.full_name,
                        customer.telephone,
                        customer.wilaya,
                        customer.commune,
                        customer.total_orders,
                        customer.created_at,
                    ),
                )
        except pg_errors.UniqueViolation as exc:
            raise DuplicateRecordError(f"Customer {customer.telephone} already exists") from exc
        return customer

    def increment_orders(self, customer_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE customers SET total_orders = total_orders + 1 WHERE id = %s",
                (customer_id,),
            )


class PostgresConfirmationRepository:
    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def find_by_external_id(self, ecomanager_order_id: int) -> OrderConfirmation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM order_confirmations WHERE ecomanager_order_id = %s",
                (ecomanager_order_id,),
            ).fetchone()
        return _confirmation_from_row(row) if row else None

    def find_by_order_id(self, order_id: str) -> OrderConfirmation | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM order_confirmations WHERE order_id = %s", (order_id,)
            ).fetchone()
        return _confirmation_from_row(row) if row else None

    def create(self, confirmation: OrderConfirmation) -> OrderConfirmation:
        c = confirmation
        with self._connect() as conn:
            row = conn.execute(
                """INSERT INTO order_confirmations
                   (id, ecomanager_order_id, order_reference, store_identifier, order_id,
                    confirmator_id, confirmator_name, confirmation_state, order_state,
                    confirmed_at, created_at, updated_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                   ON CONFLICT (ecomanager_order_id) DO NOTHING
                   RETURNING *""",
                (
                    c.id,
                    c.ecomanager_order_id,
                    c.order_reference,
                    c.store_identifier,
                    c.order_id,
                    c.confirmator_id,
                    c.confirmator_name,
                    c.confirmation_state,
                    c.order_state,
                    c.confirmed_at,
                    c.created_at,
                    c.updated_at,
                ),
            ).fetchone()
            if row is None:
                # Lost the race to a concurrent delivery of the same event
                row = conn.execute(
                    "SELECT * FROM order_confirmations WHERE ecomanager_order_id = %s",
                    (c.ecomanager_order_id,),
                ).fetchone()
        return _confirmation_from_row(row)

    def update(self, confirmation: OrderConfirmation) -> OrderConfirmation:
        c = confirmation
        c.updated_at = utcnow()
        with self._connect() as conn:
            conn.execute(
                """UPDATE order_confirmations
                   SET confirmator_id = %s, confirmator_name = %s,
                       confirmation_state = %s, order_state = %s,
                       confirmed_at = %s, order_id = %s, updated_at = %s
                   WHERE ecomanager_order_id = %s""",
                (
                    c.confirmator_id,
                    c.confirmator_name,
                    c.confirmation_state,
                    c.order_state,
                    c.confirmed_at,
                    c.order_id,
                    c.updated_at,
                    c.ecomanager_order_id,
                ),
            )
        return c

    def link_to_order(self, ecomanager_order_id: int, order_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """UPDATE order_confirmations
                   SET order_id = %s, updated_at = now()
                   WHERE ecomanager_order_id = %s AND order_id IS NULL""",
                (order_id, ecomanager_order_id),
            )
            return result.rowcount > 0


class PostgresWebhookConfigRepository:
    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def get_by_webhook_id(self, ecomanager_webhook_id: int) -> WebhookConfiguration | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM webhook_configurations WHERE ecomanager_webhook_id = %s",
                (ecomanager_webhook_id,),
            ).fetchone()
        return WebhookConfiguration(**row) if row else None

    def touch_last_triggered(self, config_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE webhook_configurations SET last_triggered = %s WHERE id = %s",
                (at, config_id),
            )


class PostgresWebhookEventRepository:
    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def create(self, event: WebhookEvent) -> WebhookEvent:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO webhook_events
                   (id, source, event_type, payload, processed, error, order_id,
                    created_at, updated_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                (
                    event.id,
                    event.source,
                    event.event_type,
                    json.dumps(event.payload, default=str),
                    event.processed,
                    event.error,
                    event.order_id,
                    event.created_at,
                    event.updated_at,
                ),
            )
        return event

    def get(self, event_id: str) -> WebhookEvent | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM webhook_events WHERE id = %s", (event_id,)).fetchone()
        return _event_from_row(row) if row else None

    def mark_result(self, event_id: str, processed: bool, error: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                """UPDATE webhook_events
                   SET processed = %s, error = %s, updated_at = now()
                   WHERE id = %s""",
                (processed, error, event_id),
            )

    def delete(self, event_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM webhook_events WHERE id = %s", (event_id,))
            return result.rowcount > 0

    def list(
        self,
        *,
        source: str | None = None,
        processed: bool | None = None,
        event_type: str | None = None,
        offset: int = 0,
        limit: int = 25,
    ) -> tuple[list[WebhookEvent], int]:
        clauses, params = [], []
        if source is not None:
            clauses.append("source = %s")
            params.append(source)
        if processed is not None:
            clauses.append("processed = %s")
            params.append(processed)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM webhook_events {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                (*params, limit, offset),
            ).fetchall()
            total = conn.execute(
                f"SELECT count(*) AS n FROM webhook_events {where}", tuple(params)
            ).fetchone()
        return [_event_from_row(r) for r in rows], total["n"] if total else 0

    def counts(self, source: str, since: datetime) -> tuple[int, int, dict[str, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT event_type,
                          count(*) AS total,
                          count(*) FILTER (WHERE processed) AS processed
                   FROM webhook_events
                   WHERE source = %s AND created_at >= %s
                   GROUP BY event_type""",
                (source, since),
            ).fetchall()
        total = sum(r["total"] for r in rows)
        processed = sum(r["processed"] for r in rows)
        return total, processed, {r["event_type"]: r["total"] for r in rows}


class PostgresApiConfigRepository:
    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def get(self, store_identifier: str) -> ApiConfiguration | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_configurations WHERE store_identifier = %s",
                (store_identifier,),
            ).fetchone()
        return ApiConfiguration(**row) if row else None

    def list_active(self) -> list[ApiConfiguration]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_configurations WHERE is_active ORDER BY store_name"
            ).fetchall()
        return [ApiConfiguration(**r) for r in rows]

    def record_usage(self, store_identifier: str, increment: int, at: datetime) -> None:
        # Single-statement increment; telemetry only, not billing-grade
        with self._connect() as conn:
            conn.execute(
                """UPDATE api_configurations
                   SET request_count = request_count + %s, last_used = %s
                   WHERE store_identifier = %s""",
                (increment, at, store_identifier),
            )


def create_postgres_repositories(connect: ConnectionFactory) -> Repositories:
    return Repositories(
        orders=PostgresOrderRepository(connect),
        customers=PostgresCustomerRepository(connect),
        confirmations=PostgresConfirmationRepository(connect),
        webhook_configs=PostgresWebhookConfigRepository(connect),
        webhook_events=PostgresWebhookEventRepository(connect),
        api_configs=PostgresApiConfigRepository(connect),
    )
