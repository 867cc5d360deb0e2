"""Persistence for orders, confirmations, and webhook audit entries."""

from ordersync.store.base import Repositories

__all__ = ["Repositories"]
