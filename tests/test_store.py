"""Tests for the repository backends."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from psycopg import errors as pg_errors

from ordersync.errors import DuplicateRecordError
from ordersync.models import Customer, Order, OrderConfirmation
from ordersync.store.memory import create_memory_repositories
from ordersync.store.postgres import (
    PostgresApiConfigRepository,
    PostgresConfirmationRepository,
    PostgresOrderRepository,
    create_postgres_repositories,
    init_schema,
)


@pytest.fixture()
def memory():
    return create_memory_repositories()


class TestMemoryOrders:
    def test_duplicate_external_id_rejected(self, memory):
        memory.orders.create(Order(reference="A1", store_identifier="S", ecomanager_id="1"))
        with pytest.raises(DuplicateRecordError):
            memory.orders.create(Order(reference="A2", store_identifier="S", ecomanager_id="1"))

    def test_same_external_id_other_source_allowed(self, memory):
        memory.orders.create(Order(reference="A1", store_identifier="S", ecomanager_id="1"))
        memory.orders.create(Order(reference="M1", store_identifier="S", ecomanager_id="1", source="MAYSTRO"))
        assert memory.orders.count() == 2

    def test_duplicate_reference_rejected(self, memory):
        memory.orders.create(Order(reference="A1", store_identifier="S"))
        with pytest.raises(DuplicateRecordError):
            memory.orders.create(Order(reference="A1", store_identifier="S"))

    def test_returned_records_are_copies(self, memory):
        order = memory.orders.create(Order(reference="A1", store_identifier="S"))
        fetched = memory.orders.get(order.id)
        fetched.shipping_status = "LIVRÉ"
        assert memory.orders.get(order.id).shipping_status is None

    def test_reads_during_concurrent_writes(self, memory):
        errors = []

        def writer():
            for i in range(1000):
                memory.orders.create(Order(reference=f"W{i}", store_identifier="S", ecomanager_id=str(i)))

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            while thread.is_alive():
                try:
                    memory.orders.max_ecomanager_id("S")
                    memory.orders.count(store_identifier="S")
                    memory.orders.get_by_reference("missing")
                except RuntimeError as exc:
                    errors.append(exc)
        finally:
            thread.join()

        assert errors == []
        assert memory.orders.count() == 1000

    def test_non_numeric_ids_ignored_by_cursor(self, memory):
        memory.orders.create(Order(reference="A1", store_identifier="S", ecomanager_id="S99999"))
        memory.orders.create(Order(reference="A2", store_identifier="S", ecomanager_id="12"))
        assert memory.orders.max_ecomanager_id("S") == 12


class TestMemoryCustomers:
    def test_unique_phone(self, memory):
        memory.customers.create(Customer(full_name="A", telephone="0555000001"))
        with pytest.raises(DuplicateRecordError):
            memory.customers.create(Customer(full_name="B", telephone="0555000001"))

    def test_increment(self, memory):
        customer = memory.customers.create(Customer(full_name="A", telephone="0555000001"))
        memory.customers.increment_orders(customer.id)
        assert memory.customers.find_by_phone("0555000001").total_orders == 2


class TestMemoryConfirmations:
    def _row(self, **overrides) -> OrderConfirmation:
        fields = {"ecomanager_order_id": 5, "order_reference": "NATU5", "store_identifier": "NATU"}
        fields.update(overrides)
        return OrderConfirmation(**fields)

    def test_create_is_idempotent(self, memory):
        first = memory.confirmations.create(self._row(confirmation_state="Nouvelle"))
        second = memory.confirmations.create(self._row(confirmation_state="Other"))
        assert second.id == first.id
        assert second.confirmation_state == "Nouvelle"

    def test_link_to_order_once(self, memory):
        memory.confirmations.create(self._row())
        assert memory.confirmations.link_to_order(5, "order-1") is True
        assert memory.confirmations.link_to_order(5, "order-2") is False
        assert memory.confirmations.find_by_order_id("order-1").ecomanager_order_id == 5

    def test_link_without_row(self, memory):
        assert memory.confirmations.link_to_order(404, "order-1") is False


# ── Postgres (mocked connection) ──────────────────────────────────────────


def _mock_connect():
    """Connection factory whose connection is a MagicMock context manager."""
    connect = MagicMock()
    conn = connect.return_value.__enter__.return_value
    return connect, conn


class TestPostgresRepositories:
    def test_init_schema_runs_every_statement(self):
        connect, conn = _mock_connect()
        init_schema(connect)
        sql = " ".join(c.args[0] for c in conn.execute.call_args_list)
        for table in (
            "customers",
            "orders",
            "order_confirmations",
            "webhook_configurations",
            "webhook_events",
            "api_configurations",
        ):
            assert f"CREATE TABLE IF NOT EXISTS {table}" in sql

    def test_cursor_orders_numerically(self):
        connect, conn = _mock_connect()
        conn.execute.return_value.fetchone.return_value = {"ecomanager_id": "100"}

        assert PostgresOrderRepository(connect).max_ecomanager_id("NATU") == 100
        sql, params = conn.execute.call_args.args
        assert "CAST(ecomanager_id AS BIGINT) DESC" in sql
        assert params == ("NATU", "ECOMANAGER")

    def test_cursor_empty_store(self):
        connect, conn = _mock_connect()
        conn.execute.return_value.fetchone.return_value = None
        assert PostgresOrderRepository(connect).max_ecomanager_id("NATU") == 0

    def test_unique_violation_becomes_duplicate_error(self):
        connect, conn = _mock_connect()
        conn.execute.side_effect = pg_errors.UniqueViolation("duplicate key")
        with pytest.raises(DuplicateRecordError):
            PostgresOrderRepository(connect).create(Order(reference="A1", store_identifier="S"))

    def test_confirmation_create_returns_existing_on_conflict(self):
        connect, conn = _mock_connect()
        existing = {
            "id": "abc",
            "ecomanager_order_id": 5,
            "order_reference": "NATU5",
            "store_identifier": "NATU",
            "order_id": None,
            "confirmator_id": None,
            "confirmator_name": None,
            "confirmation_state": "Nouvelle",
            "order_state": None,
            "confirmed_at": None,
            "created_at": datetime(2026, 10, 1, tzinfo=timezone.utc),
            "updated_at": datetime(2026, 10, 1, tzinfo=timezone.utc),
        }
        conn.execute.return_value.fetchone.side_effect = [None, existing]

        row = PostgresConfirmationRepository(connect).create(
            OrderConfirmation(ecomanager_order_id=5, order_reference="NATU5", store_identifier="NATU")
        )

        assert row.id == "abc"
        assert "ON CONFLICT (ecomanager_order_id) DO NOTHING" in conn.execute.call_args_list[0].args[0]

    def test_link_to_order_only_unlinked(self):
        connect, conn = _mock_connect()
        conn.execute.return_value.rowcount = 0
        assert PostgresConfirmationRepository(connect).link_to_order(5, "o1") is False
        assert "order_id IS NULL" in conn.execute.call_args.args[0]

    def test_record_usage_increments_in_sql(self):
        connect, conn = _mock_connect()
        at = datetime(2026, 10, 19, tzinfo=timezone.utc)
        PostgresApiConfigRepository(connect).record_usage("NATU", 3, at)
        sql, params = conn.execute.call_args.args
        assert "request_count = request_count + %s" in sql
        assert params == (3, at, "NATU")

    def test_bundle(self):
        connect, _conn = _mock_connect()
        repos = create_postgres_repositories(connect)
        assert isinstance(repos.orders, PostgresOrderRepository)
