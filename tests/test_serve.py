"""Tests for app assembly."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from ordersync.config import Settings
from ordersync.serve import build_repositories, create_app


def test_memory_backend():
    repos = build_repositories(Settings(storage_backend="memory"))
    assert repos.orders.count() == 0


def test_unknown_backend_rejected():
    with pytest.raises(ValueError):
        build_repositories(Settings(storage_backend="sqlite"))


def test_postgres_backend_initializes_schema():
    with patch("ordersync.store.postgres.make_connection_factory") as make_factory, patch(
        "ordersync.store.postgres.init_schema"
    ) as init_schema:
        build_repositories(Settings(storage_backend="postgres", database_url="postgresql://x/y"))
    make_factory.assert_called_once_with("postgresql://x/y")
    init_schema.assert_called_once_with(make_factory.return_value)


def test_create_app_registers_routes():
    app = create_app(settings=Settings(storage_backend="memory"), redis_client=MagicMock())
    paths = {route.path for route in app.routes}
    assert {
        "/webhooks/ecomanager",
        "/webhooks/shipping",
        "/webhooks/shipping/events",
        "/webhooks/shipping/events/{event_id}/retry",
        "/webhooks/shipping/events/{event_id}",
        "/webhooks/shipping/stats",
        "/sync/stores/{store_identifier}",
        "/sync/stores",
        "/sync/status",
        "/sync/health",
    } <= paths
    assert app.state.orchestrator is not None
