"""Sync Orchestrator: pulls EcoManager orders into the local order table.

Incremental runs resume from the highest stored external id of the store
(compared as a number, never as text). Orders are written in small batches
and each order is isolated: one bad record is counted and reported, the
rest of the batch goes on. Stores are synced one after another.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ordersync.config import Settings
from ordersync.errors import (
    DuplicateRecordError,
    OrderSyncError,
    StoreNotConfiguredError,
    UpstreamError,
)
from ordersync.models import SOURCE_ECOMANAGER, ApiConfiguration, Customer, SyncStatus, utcnow
from ordersync.sources.ecomanager import ClientFactory, map_order
from ordersync.store.base import Repositories
from ordersync.sync.status import SyncStatusStore
from ordersync.webhooks.confirmations import ConfirmationService

logger = logging.getLogger(__name__)

SYNC_FULL = "full"
SYNC_INCREMENTAL = "incremental"

_RECENT_WINDOW = timedelta(hours=24)


@dataclass
class StoreSyncResult:
    success: bool
    store_identifier: str
    store_name: str = ""
    sync_type: str = SYNC_INCREMENTAL
    synced_count: int = 0
    error_count: int = 0
    total_fetched: int = 0
    last_sync: str = ""
    errors: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "success": self.success,
            "storeName": self.store_name,
            "storeIdentifier": self.store_identifier,
            "syncType": self.sync_type,
            "syncedCount": self.synced_count,
            "errorCount": self.error_count,
            "totalFetched": self.total_fetched,
            "lastSync": self.last_sync,
            "errors": self.errors,
        }
        if self.error:
            d["error"] = self.error
        return d


@dataclass
class MultiStoreSyncResult:
    results: dict[str, StoreSyncResult] = field(default_factory=dict)

    @property
    def total_synced(self) -> int:
        return sum(r.synced_count for r in self.results.values())

    @property
    def total_fetched(self) -> int:
        return sum(r.total_fetched for r in self.results.values())

    @property
    def failed_stores(self) -> list[str]:
        return [s for s, r in self.results.items() if not r.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": {s: r.to_dict() for s, r in self.results.items()},
            "totalSynced": self.total_synced,
            "totalFetched": self.total_fetched,
            "storesProcessed": len(self.results),
            "failedStores": self.failed_stores,
        }


class SyncOrchestrator:
    def __init__(
        self,
        repos: Repositories,
        confirmation_service: ConfirmationService,
        client_factory: ClientFactory,
        status_store: SyncStatusStore,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repos = repos
        self._confirmations = confirmation_service
        self._client_factory = client_factory
        self._status = status_store
        self._settings = settings
        self._sleep = sleep
        self._running = False

    # ── Single store ──────────────────────────────────────────────────────

    def _load_config(self, store_identifier: str) -> ApiConfiguration:
        config = self._repos.api_configs.get(store_identifier)
        if config is None or not config.is_active:
            raise StoreNotConfiguredError(store_identifier)
        return config

    def sync_store(self, store_identifier: str, full: bool = False) -> StoreSyncResult:
        """Pull and materialize one store's orders.

        Raises:
            StoreNotConfiguredError: no active API configuration
            UpstreamError: EcoManager unreachable or a page fetch failed
        """
        config = self._load_config(store_identifier)
        sync_type = SYNC_FULL if full else SYNC_INCREMENTAL

        with self._client_factory(config) as client:
            if not client.test_connection():
                raise UpstreamError(f"Failed to connect to EcoManager API for {config.store_name}")

            if full:
                raw_orders = client.fetch_all_orders()
            else:
                cursor = self._repos.orders.max_ecomanager_id(store_identifier, SOURCE_ECOMANAGER)
                logger.info("Last order id for %s: %d", config.store_name, cursor)
                raw_orders = client.fetch_new_orders(cursor)

        result = StoreSyncResult(
            success=True,
            store_identifier=store_identifier,
            store_name=config.store_name,
            sync_type=sync_type,
            total_fetched=len(raw_orders),
        )

        batch_size = max(self._settings.sync_batch_size, 1)
        for start in range(0, len(raw_orders), batch_size):
            batch = raw_orders[start : start + batch_size]
            for raw in batch:
                try:
                    if self._materialize(raw, store_identifier):
                        result.synced_count += 1
                except Exception as exc:
                    logger.error(
                        "Error processing order %s for %s: %s",
                        raw.get("id") if isinstance(raw, dict) else raw,
                        config.store_name,
                        exc,
                    )
                    result.error_count += 1
                    result.errors.append(
                        {"orderId": raw.get("id") if isinstance(raw, dict) else None, "error": str(exc)}
                    )
            logger.debug(
                "Batch %d done for %s (%d/%d)",
                start // batch_size + 1,
                config.store_name,
                min(start + batch_size, len(raw_orders)),
                len(raw_orders),
            )

        now = utcnow()
        units = _request_units(len(raw_orders), self._settings.ecomanager_page_size)
        self._repos.api_configs.record_usage(store_identifier, units, now)
        result.last_sync = now.isoformat()

        ids = [_safe_int(r.get("id")) for r in raw_orders if isinstance(r, dict)]
        ids = [i for i in ids if i is not None]
        if ids:
            self._status.save(
                SyncStatus(
                    store_identifier=store_identifier,
                    store_name=config.store_name,
                    last_order_id=max(ids),
                    total_synced=result.synced_count,
                    last_sync=result.last_sync,
                )
            )

        logger.info(
            "Sync completed for %s (%s): synced=%d errors=%d fetched=%d",
            config.store_name,
            sync_type,
            result.synced_count,
            result.error_count,
            result.total_fetched,
        )
        return result

    def _materialize(self, raw: dict[str, Any], store_identifier: str) -> bool:
        """Write one source order. Returns False when it already exists."""
        ecomanager_id = str(raw.get("id"))
        if self._repos.orders.get_by_ecomanager_id(ecomanager_id) is not None:
            return False

        mapped = map_order(raw, store_identifier)
        if self._repos.orders.get_by_reference(mapped.order.reference) is not None:
            raise DuplicateRecordError(f"Order reference {mapped.order.reference} already exists")

        customers = self._repos.customers
        customer = customers.find_by_phone(mapped.customer.telephone)
        returning = customer is not None
        if customer is None:
            customer = customers.create(
                Customer(
                    full_name=mapped.customer.full_name,
                    telephone=mapped.customer.telephone,
                    wilaya=mapped.customer.wilaya,
                    commune=mapped.customer.commune,
                    total_orders=1,
                )
            )

        mapped.order.customer_id = customer.id
        order = self._repos.orders.create(mapped.order)
        if returning:
            customers.increment_orders(customer.id)
        self._confirmations.link_confirmation_to_order(int(ecomanager_id), order.id)
        return True

    # ── All stores ────────────────────────────────────────────────────────

    def sync_all_stores(self, full: bool = False) -> MultiStoreSyncResult:
        """Sync every active store in turn. A failing store never stops the rest."""
        configs = self._repos.api_configs.list_active()
        summary = MultiStoreSyncResult()
        if not configs:
            logger.info("No active store configurations found")
            return summary

        self._running = True
        try:
            for index, config in enumerate(configs):
                if index and self._settings.store_sync_delay_seconds > 0:
                    self._sleep(self._settings.store_sync_delay_seconds)
                logger.info("Syncing store: %s (%s)", config.store_name, config.store_identifier)
                try:
                    summary.results[config.store_identifier] = self.sync_store(
                        config.store_identifier, full=full
                    )
                except Exception as exc:
                    logger.exception("Error syncing store %s", config.store_identifier)
                    summary.results[config.store_identifier] = StoreSyncResult(
                        success=False,
                        store_identifier=config.store_identifier,
                        store_name=config.store_name,
                        sync_type=SYNC_FULL if full else SYNC_INCREMENTAL,
                        error=str(exc),
                    )
        finally:
            self._running = False

        logger.info(
            "Completed sync for all stores: synced=%d fetched=%d failed=%s",
            summary.total_synced,
            summary.total_fetched,
            summary.failed_stores,
        )
        return summary

    # ── Reporting ─────────────────────────────────────────────────────────

    def get_sync_status(self) -> list[dict[str, Any]]:
        statuses = []
        for config in self._repos.api_configs.list_active():
            last_status = self._status.get(config.store_identifier)
            last_created = self._repos.orders.last_created_at(config.store_identifier)
            statuses.append(
                {
                    "storeName": config.store_name,
                    "storeIdentifier": config.store_identifier,
                    "lastUsed": config.last_used.isoformat() if config.last_used else None,
                    "requestCount": config.request_count,
                    "lastSyncStatus": last_status.to_dict() if last_status else None,
                    "lastOrderCreated": last_created.isoformat() if last_created else None,
                    "totalOrders": self._repos.orders.count(store_identifier=config.store_identifier),
                }
            )
        return statuses

    def health_check(self) -> dict[str, Any]:
        now = utcnow()
        return {
            "isRunning": self._running,
            "activeStores": len(self._repos.api_configs.list_active()),
            "totalOrders": self._repos.orders.count(),
            "recentOrders": self._repos.orders.count(since=now - _RECENT_WINDOW),
            "lastHealthCheck": now.isoformat(),
        }


def _request_units(fetched: int, page_size: int) -> int:
    """One usage unit per page of orders fetched."""
    return math.ceil(fetched / max(page_size, 1))


def _safe_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ── HTTP handlers ─────────────────────────────────────────────────────────
# Plain ``def`` handlers run in the FastAPI threadpool.


def _error_response(exc: OrderSyncError) -> JSONResponse:
    return JSONResponse(
        {"success": False, "error": {"message": exc.message}}, status_code=exc.status_code
    )


def sync_store_route(request: Request, store_identifier: str, full: bool = False) -> JSONResponse:
    orchestrator: SyncOrchestrator = request.app.state.orchestrator
    try:
        result = orchestrator.sync_store(store_identifier, full=full)
    except OrderSyncError as exc:
        logger.warning("Sync failed for %s: %s", store_identifier, exc.message)
        return _error_response(exc)
    except Exception:
        logger.exception("Unexpected error syncing %s", store_identifier)
        return JSONResponse(
            {"success": False, "error": {"message": "Internal server error"}}, status_code=500
        )
    return JSONResponse({"success": True, "data": result.to_dict()})


def sync_all_route(request: Request, full: bool = False) -> JSONResponse:
    orchestrator: SyncOrchestrator = request.app.state.orchestrator
    summary = orchestrator.sync_all_stores(full=full)
    return JSONResponse({"success": True, "data": summary.to_dict()})


def sync_status_route(request: Request) -> JSONResponse:
    orchestrator: SyncOrchestrator = request.app.state.orchestrator
    return JSONResponse({"success": True, "data": orchestrator.get_sync_status()})


def sync_health_route(request: Request) -> JSONResponse:
    orchestrator: SyncOrchestrator = request.app.state.orchestrator
    return JSONResponse({"success": True, "data": orchestrator.health_check()})


def register_sync_routes(app: FastAPI) -> None:
    app.add_api_route("/sync/stores/{store_identifier}", sync_store_route, methods=["POST"])
    app.add_api_route("/sync/stores", sync_all_route, methods=["POST"])
    app.add_api_route("/sync/status", sync_status_route, methods=["GET"])
    app.add_api_route("/sync/health", sync_health_route, methods=["GET"])
    logger.info("Sync routes registered: /sync")

