"""Shared fixtures for the ordersync test suite."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi.testclient import TestClient

from ordersync.config import Settings
from ordersync.models import ApiConfiguration, WebhookConfiguration
from ordersync.serve import create_app
from ordersync.sources.ecomanager import EcoManagerClient
from ordersync.store.memory import create_memory_repositories
from ordersync.webhooks.verification import compute_signature

WEBHOOK_ID = 42
WEBHOOK_SECRET = "ecomanager-test-secret"
STORE = "NATU"


class FakeEcoManager:
    """In-process EcoManager /orders endpoint, sorted by id descending."""

    def __init__(self, orders: list[dict[str, Any]] | None = None) -> None:
        self.orders = list(orders or [])
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None
        self.connection_ok = True

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.connection_ok:
            return httpx.Response(401, json={"message": "Unauthenticated"})
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"message": "boom"})
        page = int(request.url.params.get("page", 1))
        per_page = int(request.url.params.get("per_page", 100))
        ordered = sorted(self.orders, key=lambda o: int(o["id"]), reverse=True)
        start = (page - 1) * per_page
        return httpx.Response(200, json={"data": ordered[start : start + per_page]})

    @property
    def page_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "sort" in r.url.params]


def make_raw_order(order_id: int, **overrides: Any) -> dict[str, Any]:
    raw = {
        "id": order_id,
        "reference": f"NATU{order_id}",
        "full_name": f"Client {order_id}",
        "telephone": f"0555{order_id:06d}",
        "wilaya": "Alger",
        "commune": "Bab Ezzouar",
        "total": 4500,
        "items": [
            {"product_id": 7, "title": "Savon", "quantity": 2, "sku": "SAV-1", "unit_price": 1500}
        ],
        "order_state_name": "En dispatch",
        "confirmation_history": [],
        "created_at": "2026-10-01T10:00:00Z",
    }
    raw.update(overrides)
    return raw


@pytest.fixture()
def raw_order():
    """Factory for EcoManager order dicts as the API returns them."""
    return make_raw_order


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        storage_backend="memory",
        store_sync_delay_seconds=0,
        ecomanager_page_size=10,
        ecomanager_max_retries=2,
    )


@pytest.fixture()
def repos():
    repos = create_memory_repositories()
    repos.webhook_configs.add(
        WebhookConfiguration(
            ecomanager_webhook_id=WEBHOOK_ID,
            webhook_secret=WEBHOOK_SECRET,
            store_identifier=STORE,
        )
    )
    repos.api_configs.add(
        ApiConfiguration(store_name="Naturel", store_identifier=STORE, api_token="tok-natu")
    )
    return repos


@pytest.fixture()
def redis_client() -> MagicMock:
    """Dict-backed stand-in for the redis client methods we use."""
    data: dict[str, str] = {}
    client = MagicMock()
    client.get.side_effect = data.get
    client.set.side_effect = lambda key, value, ex=None: data.__setitem__(key, value)
    client.data = data
    return client


@pytest.fixture()
def fake_ecomanager() -> FakeEcoManager:
    return FakeEcoManager()


@pytest.fixture()
def client_factory(fake_ecomanager: FakeEcoManager, settings: Settings):
    def _factory(config: ApiConfiguration) -> EcoManagerClient:
        return EcoManagerClient(
            store_name=config.store_name,
            store_identifier=config.store_identifier,
            api_token=config.api_token,
            base_url="https://eco.test/api/shop/v2",
            page_size=settings.ecomanager_page_size,
            max_retries=settings.ecomanager_max_retries,
            transport=httpx.MockTransport(fake_ecomanager.handler),
            sleep=lambda _s: None,
        )

    return _factory


@pytest.fixture()
def app(settings, repos, redis_client, client_factory):
    return create_app(
        settings=settings,
        repos=repos,
        redis_client=redis_client,
        client_factory=client_factory,
        sleep=lambda _s: None,
    )


@pytest.fixture()
def client(app) -> TestClient:
    return TestClient(app)


def ecomanager_headers(
    body: bytes,
    event: str = "OrderCreated",
    webhook_id: int | str = WEBHOOK_ID,
    secret: str = WEBHOOK_SECRET,
) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "X-EcoManager-Signature": compute_signature(secret, body),
        "X-EcoManager-Source": "ecomanager",
        "X-EcoManager-Event": event,
        "X-EcoManager-Webhook-Id": str(webhook_id),
    }


@pytest.fixture()
def send_ecomanager(client):
    """POST a signed EcoManager event. Returns the response."""

    def _send(payload: dict[str, Any], event: str = "OrderCreated", **kwargs: Any):
        body = json.dumps(payload).encode()
        return client.post(
            "/webhooks/ecomanager", content=body, headers=ecomanager_headers(body, event, **kwargs)
        )

    return _send
