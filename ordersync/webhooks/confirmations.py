"""EcoManager confirmation events -> Confirmation State Store.

Applies OrderCreated and OrderConfirmationStatusChanged events. Both paths
are idempotent on the EcoManager order id, and a status change that arrives
before its OrderCreated synthesizes the row first, so either arrival order
converges to the same state.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, Field

from ordersync.models import OrderConfirmation, WebhookConfiguration, utcnow
from ordersync.store.base import ConfirmationRepository, OrderRepository, WebhookConfigRepository

logger = logging.getLogger(__name__)

EVENT_ORDER_CREATED = "OrderCreated"
EVENT_CONFIRMATION_CHANGED = "OrderConfirmationStatusChanged"


class Confirmator(BaseModel):
    id: int | None = None
    name: str | None = None


class EcoManagerOrderEvent(BaseModel):
    """Order payload carried by EcoManager webhook events."""

    id: int = Field(description="EcoManager order id")
    reference: str
    order_state_name: str | None = None
    confirmation_state_name: str | None = None
    confirmator: Confirmator | None = None
    full_name: str | None = None
    created_at: datetime | None = None
    confirmed_at: datetime | None = None

    model_config = {"extra": "ignore"}


class ConfirmationService:
    """Event application over the confirmation, order, and webhook repositories."""

    def __init__(
        self,
        confirmations: ConfirmationRepository,
        orders: OrderRepository,
        webhook_configs: WebhookConfigRepository,
    ) -> None:
        self._confirmations = confirmations
        self._orders = orders
        self._webhook_configs = webhook_configs

    def handle_order_created(
        self, event: EcoManagerOrderEvent, store_identifier: str
    ) -> OrderConfirmation:
        """Create the confirmation row if absent. Replays are no-ops."""
        logger.info("OrderCreated: %s (%s)", event.reference, store_identifier)

        existing = self._confirmations.find_by_external_id(event.id)
        if existing is not None:
            logger.info("Order confirmation already exists: %s", event.reference)
            return existing

        linked = self._orders.find_for_store(event.id, store_identifier)
        confirmator = event.confirmator or Confirmator()
        confirmation = self._confirmations.create(
            OrderConfirmation(
                ecomanager_order_id=event.id,
                order_reference=event.reference,
                store_identifier=store_identifier,
                order_id=linked.id if linked else None,
                confirmator_id=confirmator.id,
                confirmator_name=confirmator.name,
                confirmation_state=event.confirmation_state_name,
                order_state=event.order_state_name,
                confirmed_at=event.confirmed_at,
            )
        )
        logger.info("Created confirmation record for %s", event.reference)
        return confirmation

    def handle_confirmation_changed(
        self, event: EcoManagerOrderEvent, store_identifier: str
    ) -> OrderConfirmation:
        """Overwrite the current confirmation state (no history is kept)."""
        logger.info("Confirmation changed: %s (%s)", event.reference, store_identifier)

        confirmation = self._confirmations.find_by_external_id(event.id)
        if confirmation is None:
            # Status change can arrive before OrderCreated, or race with it
            logger.info("Creating missing confirmation record for %s", event.reference)
            confirmation = self.handle_order_created(event, store_identifier)

        return self._apply_change(confirmation, event)

    def _apply_change(
        self, confirmation: OrderConfirmation, event: EcoManagerOrderEvent
    ) -> OrderConfirmation:
        confirmator = event.confirmator or Confirmator()
        confirmation.confirmator_id = confirmator.id
        confirmation.confirmator_name = confirmator.name
        confirmation.confirmation_state = event.confirmation_state_name
        confirmation.order_state = event.order_state_name
        if event.confirmed_at is not None:
            confirmation.confirmed_at = event.confirmed_at
        updated = self._confirmations.update(confirmation)

        logger.info(
            "Updated confirmation: %s by %s",
            event.confirmation_state_name,
            confirmator.name or "N/A",
        )
        return updated

    def get_webhook_config(self, webhook_id: str) -> WebhookConfiguration | None:
        try:
            return self._webhook_configs.get_by_webhook_id(int(webhook_id))
        except ValueError:
            logger.warning("Non-numeric webhook id: %r", webhook_id)
            return None

    def update_webhook_last_triggered(self, config: WebhookConfiguration) -> None:
        try:
            self._webhook_configs.touch_last_triggered(config.id, utcnow())
        except Exception:
            logger.exception("Error updating webhook last triggered for %s", config.id)

    def link_confirmation_to_order(self, ecomanager_order_id: int, order_id: str) -> bool:
        """Attach a confirmation that arrived before its order was synced."""
        try:
            linked = self._confirmations.link_to_order(ecomanager_order_id, order_id)
        except Exception:
            logger.exception("Error linking confirmation %s to order", ecomanager_order_id)
            return False
        if linked:
            logger.info("Linked confirmation %s to order %s", ecomanager_order_id, order_id)
        return linked
