"""HTTP service entry point.

Builds the FastAPI app, wires repositories and services onto ``app.state``
and registers the webhook and sync routes.

Run with:
    uvicorn ordersync.serve:create_app --factory
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable

from fastapi import FastAPI

from ordersync import __version__
from ordersync.config import Settings, get_settings
from ordersync.logging_config import configure_logging
from ordersync.sources.ecomanager import ClientFactory, make_client_factory
from ordersync.store.base import Repositories
from ordersync.sync.orchestrator import SyncOrchestrator, register_sync_routes
from ordersync.sync.status import SyncStatusStore, connect_redis
from ordersync.webhooks.audit import AuditLog
from ordersync.webhooks.confirmations import ConfirmationService
from ordersync.webhooks.ecomanager import register_ecomanager_routes
from ordersync.webhooks.shipping import ShippingReconciler, register_shipping_routes

logger = logging.getLogger(__name__)


def build_repositories(settings: Settings) -> Repositories:
    if settings.storage_backend == "memory":
        from ordersync.store.memory import create_memory_repositories

        logger.warning("Using in-memory storage; data is lost on restart")
        return create_memory_repositories()
    if settings.storage_backend != "postgres":
        raise ValueError(f"Unknown storage backend: {settings.storage_backend}")

    from ordersync.store.postgres import (
        create_postgres_repositories,
        init_schema,
        make_connection_factory,
    )

    connect = make_connection_factory(settings.database_url)
    init_schema(connect)
    return create_postgres_repositories(connect)


def create_app(
    settings: Settings | None = None,
    repos: Repositories | None = None,
    redis_client: Any = None,
    client_factory: ClientFactory | None = None,
    sleep: Callable[[float], None] | None = None,
) -> FastAPI:
    """Assemble the service. Every collaborator can be injected for tests."""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    repos = repos or build_repositories(settings)
    if redis_client is None:
        redis_client = connect_redis(settings.redis_url)
    client_factory = client_factory or make_client_factory(
        default_base_url=settings.ecomanager_default_base_url,
        page_size=settings.ecomanager_page_size,
        max_pages=settings.ecomanager_max_pages,
        max_retries=settings.ecomanager_max_retries,
        timeout=settings.ecomanager_timeout_seconds,
    )

    confirmation_service = ConfirmationService(
        repos.confirmations, repos.orders, repos.webhook_configs
    )
    audit_log = AuditLog(repos.webhook_events)
    orchestrator_kwargs: dict[str, Any] = {}
    if sleep is not None:
        orchestrator_kwargs["sleep"] = sleep

    app = FastAPI(title="ordersync", version=__version__)
    app.state.settings = settings
    app.state.repos = repos
    app.state.confirmation_service = confirmation_service
    app.state.audit_log = audit_log
    app.state.shipping_reconciler = ShippingReconciler(repos.orders, audit_log)
    app.state.orchestrator = SyncOrchestrator(
        repos,
        confirmation_service,
        client_factory,
        SyncStatusStore(redis_client, settings.sync_status_ttl_seconds),
        settings,
        **orchestrator_kwargs,
    )

    register_ecomanager_routes(app)
    register_shipping_routes(app)
    register_sync_routes(app)

    logger.info("ordersync %s started (storage=%s)", __version__, settings.storage_backend)
    return app


def main() -> None:
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run("ordersync.serve:create_app", factory=True, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
