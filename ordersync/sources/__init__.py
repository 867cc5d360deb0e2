"""Outbound clients for the source system."""
