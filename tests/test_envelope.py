"""Tests for Maystro envelope decoding."""

from __future__ import annotations

import base64
import json

import pytest

from ordersync.webhooks.envelope import (
    EnvelopeError,
    decode_envelope,
    decode_json_text,
    decode_message_data,
)

EVENT = {"event": "OrderStatusChanged", "payload": {"external_order_id": "NATU1", "status": 41}}


def _pubsub(event) -> dict:
    return {"message": {"data": base64.b64encode(json.dumps(event).encode()).decode()}}


class TestDecodeEnvelope:
    def test_message_data_envelope(self):
        assert decode_envelope(json.dumps(_pubsub(EVENT)).encode()) == EVENT

    def test_plain_json_bytes(self):
        assert decode_envelope(json.dumps(EVENT).encode()) == EVENT

    def test_json_string_wrapping_json(self):
        assert decode_envelope(json.dumps(json.dumps(EVENT))) == EVENT

    def test_parsed_dict(self):
        assert decode_envelope(EVENT) == EVENT

    def test_parsed_message_data_dict(self):
        """Stored payloads on retry may still carry the Pub/Sub wrapper."""
        assert decode_envelope(_pubsub(EVENT)) == EVENT

    @pytest.mark.parametrize("body", [b"", b"garbage", b"[1, 2]", b'"just text"', 42, None])
    def test_garbage_rejected(self, body):
        with pytest.raises(EnvelopeError):
            decode_envelope(body)

    def test_broken_base64_rejected(self):
        with pytest.raises(EnvelopeError):
            decode_envelope(json.dumps({"message": {"data": "%%%not-base64%%%"}}))

    def test_base64_of_non_object_rejected(self):
        with pytest.raises(EnvelopeError):
            decode_envelope({"message": {"data": base64.b64encode(b"[1]").decode()}})

    def test_custom_decoder_order(self):
        calls = []

        def first(body):
            calls.append("first")
            return None

        assert decode_envelope(EVENT, decoders=[first, decode_json_text, lambda b: b]) == EVENT
        assert calls == ["first"]


class TestIndividualDecoders:
    def test_message_data_passes_on_other_shapes(self):
        assert decode_message_data(json.dumps(EVENT)) is None
        assert decode_message_data({"message": "nope"}) is None

    def test_json_text_ignores_dicts(self):
        assert decode_json_text(EVENT) is None
