"""Inbound webhooks: EcoManager order events and Maystro shipping events.

EcoManager events are signature-verified and applied idempotently to the
confirmation store. Maystro events are decoded, reconciled against local
orders, and always acknowledged, with failures kept in the audit log.
"""
