"""Customer phone number normalization.

Customers are deduplicated by phone, so every number goes through here
before lookup. EcoManager sends whatever the buyer typed.
"""

from __future__ import annotations

import re

_ALLOWED = re.compile(r"^\+?[\d\s\-().]+$")
_MIN_DIGITS = 9
_MAX_DIGITS = 15


def normalize_phone(number: str | None) -> str:
    """Return the canonical digits-only form of ``number``.

    Accepts digits, spaces, hyphens, dots, parentheses, and an optional
    leading +. Algerian international numbers (+213 / 00213) are rewritten
    to the national 0-prefixed form.

    Raises:
        ValueError: empty, contains other characters, or wrong digit count
    """
    raw = (number or "").strip()
    if not raw or not _ALLOWED.match(raw):
        raise ValueError(f"Invalid phone number: {number!r}")

    digits = re.sub(r"\D", "", raw)
    if digits.startswith("00213"):
        digits = "0" + digits[5:]
    elif raw.startswith("+213") or (digits.startswith("213") and len(digits) == 12):
        digits = "0" + digits[3:]

    if not _MIN_DIGITS <= len(digits) <= _MAX_DIGITS:
        raise ValueError(f"Invalid phone number: {number!r}")
    return digits
