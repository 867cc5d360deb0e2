"""ordersync: EcoManager order ingestion, confirmation webhooks, and
Maystro shipping reconciliation."""

__version__ = "0.1.0"
