"""Maystro webhook envelope decoding.

Maystro has delivered the same logical event in three shapes over time.
Decoders run in order; each returns the event dict, ``None`` to pass to
the next decoder, or raises EnvelopeError when the body has its shape but
the content is broken.

1. ``{"message": {"data": "<base64 JSON>"}}``: Pub/Sub style, decoded once
2. JSON text: an object, or a JSON string whose content is an object
3. An already-parsed dict (stored payloads on retry)
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EnvelopeError(ValueError):
    """Body could not be decoded into a webhook event."""


Decoder = Callable[[Any], "dict | None"]


def _load_json(raw: Any) -> Any:
    """Parse bytes/str as JSON. Returns None when it isn't JSON."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if not isinstance(raw, str):
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def decode_message_data(body: Any) -> dict | None:
    envelope = body if isinstance(body, dict) else _load_json(body)
    if not isinstance(envelope, dict):
        return None
    message = envelope.get("message")
    if not isinstance(message, dict) or "data" not in message:
        return None

    try:
        decoded = base64.b64decode(message["data"], validate=True)
        data = json.loads(decoded)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise EnvelopeError(f"Invalid base64 message data: {exc}") from exc
    if not isinstance(data, dict):
        raise EnvelopeError("Decoded message data is not a JSON object")
    return data


def decode_json_text(body: Any) -> dict | None:
    if not isinstance(body, (bytes, bytearray, str)):
        return None
    data = _load_json(body)
    if isinstance(data, str):
        # JSON string wrapping the JSON event
        data = _load_json(data)
    return data if isinstance(data, dict) else None


def decode_object(body: Any) -> dict | None:
    return body if isinstance(body, dict) else None


DECODERS: list[Decoder] = [decode_message_data, decode_json_text, decode_object]


def decode_envelope(body: Any, decoders: list[Decoder] | None = None) -> dict:
    """Run decoders in order and return the first decoded event.

    Raises:
        EnvelopeError: no decoder accepted the body, or one found it broken
    """
    for decoder in decoders or DECODERS:
        data = decoder(body)
        if data is not None:
            logger.debug("Maystro envelope decoded by %s", decoder.__name__)
            return data
    raise EnvelopeError("Invalid webhook data format")
