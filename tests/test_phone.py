"""Tests for customer phone normalization."""

from __future__ import annotations

import pytest

from ordersync.phone import normalize_phone


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0555123456", "0555123456"),
        ("0555 12 34 56", "0555123456"),
        ("0555-12-34-56", "0555123456"),
        ("(0555) 12.34.56", "0555123456"),
        ("+213555123456", "0555123456"),
        ("+213 555 12 34 56", "0555123456"),
        ("00213555123456", "0555123456"),
        ("213555123456", "0555123456"),
        ("+33612345678", "33612345678"),
    ],
)
def test_normalizes(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "call me", "0555#123456", "12345", "1" * 16])
def test_rejects(raw):
    with pytest.raises(ValueError):
        normalize_phone(raw)
