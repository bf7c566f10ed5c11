"""Tests for webhook signature verification and payload models.

Tests:
- HMAC-SHA256 verification (constant-time, fail-closed)
- Tampered bodies and wrong secrets are rejected
- Malformed signatures are rejected without raising
- Timing parity between wrong-value and malformed signatures
- Payload validation and event serialization
"""

from __future__ import annotations

import hashlib
import hmac
import json
import statistics
import time

import pytest
from pydantic import ValidationError

from commerce_gateway.webhooks.models import WebhookEvent, WebhookPayload
from commerce_gateway.webhooks.verification import WebhookVerifier, sign, verify

SECRET = "veeqo-webhook-secret"
BODY = b'{"event_type":"updated","resource_type":"Order","resource_id":42,"data":{"status":"shipped"}}'


# ── Signature Verification ────────────────────────────────────────────────


class TestVerify:
    def test_valid_signature(self):
        assert verify(BODY, sign(BODY, SECRET), SECRET) is True

    def test_signature_matches_reference_hmac(self):
        expected = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert sign(BODY, SECRET) == expected

    def test_sha256_prefix_accepted(self):
        assert verify(BODY, "sha256=" + sign(BODY, SECRET), SECRET) is True

    def test_uppercase_hex_accepted(self):
        assert verify(BODY, sign(BODY, SECRET).upper(), SECRET) is True

    def test_wrong_secret_rejected(self):
        assert verify(BODY, sign(BODY, "other-secret"), SECRET) is False

    @pytest.mark.parametrize("index", [0, len(BODY) // 2, len(BODY) - 1])
    def test_single_byte_tamper_rejected(self, index):
        sig = sign(BODY, SECRET)
        tampered = bytearray(BODY)
        tampered[index] ^= 0x01
        assert verify(bytes(tampered), sig, SECRET) is False

    def test_reserialized_json_rejected(self):
        """Verification is over raw bytes, so re-encoding the same JSON fails."""
        sig = sign(BODY, SECRET)
        reencoded = json.dumps(json.loads(BODY)).encode()
        assert reencoded != BODY
        assert verify(reencoded, sig, SECRET) is False

    def test_missing_signature_rejected(self):
        assert verify(BODY, None, SECRET) is False
        assert verify(BODY, "", SECRET) is False

    def test_missing_secret_rejects(self):
        """No secret configured -> always reject (fail-closed)."""
        assert verify(BODY, sign(BODY, ""), "") is False
        assert verify(BODY, "anything", None) is False

    @pytest.mark.parametrize("bad", ["not-hex", "abc", "zz" * 32, "ab" * 31, "ab" * 33])
    def test_malformed_signature_rejected(self, bad):
        assert verify(BODY, bad, SECRET) is False

    def test_secret_never_logged(self, caplog):
        with caplog.at_level("DEBUG"):
            verify(BODY, "ab" * 32, SECRET)
            verify(BODY, "garbage", SECRET)
        assert SECRET not in caplog.text

    def test_timing_wrong_value_vs_malformed(self):
        """Correct-length wrong signatures and malformed ones cost about the same."""
        body = b"x" * 2048
        wrong = "00" * 32
        malformed = "nothex"

        def median_ns(sig: str) -> float:
            samples = []
            for _ in range(300):
                start = time.perf_counter_ns()
                verify(body, sig, SECRET)
                samples.append(time.perf_counter_ns() - start)
            return statistics.median(samples)

        # Warm up
        median_ns(wrong)
        median_ns(malformed)
        a, b = median_ns(wrong), median_ns(malformed)
        assert max(a, b) / max(min(a, b), 1) < 5


class TestWebhookVerifier:
    def test_configured(self):
        assert WebhookVerifier(SECRET).configured is True
        assert WebhookVerifier("").configured is False
        assert WebhookVerifier(None).configured is False

    def test_verify_delegates(self):
        verifier = WebhookVerifier(SECRET)
        assert verifier.verify(BODY, sign(BODY, SECRET)) is True
        assert verifier.verify(BODY, sign(BODY, "nope")) is False

    def test_repr_hides_secret(self):
        assert SECRET not in repr(WebhookVerifier(SECRET))


# ── Payload Model ─────────────────────────────────────────────────────────


class TestWebhookPayload:
    def test_valid_payload(self):
        payload = WebhookPayload.model_validate(json.loads(BODY))
        assert payload.event_type == "updated"
        assert payload.resource_type == "Order"
        assert payload.resource_id == 42
        assert payload.data == {"status": "shipped"}

    def test_data_defaults_to_empty(self):
        payload = WebhookPayload.model_validate(
            {"event_type": "created", "resource_type": "Product", "resource_id": "sku-1"}
        )
        assert payload.data == {}

    @pytest.mark.parametrize("missing", ["event_type", "resource_type", "resource_id"])
    def test_required_fields(self, missing):
        data = {"event_type": "created", "resource_type": "Product", "resource_id": 1}
        data.pop(missing)
        with pytest.raises(ValidationError):
            WebhookPayload.model_validate(data)

    @pytest.mark.parametrize("value", ["", "Order.updated", "a:b", "*", "has space"])
    def test_type_fields_must_be_plain_identifiers(self, value):
        with pytest.raises(ValidationError):
            WebhookPayload.model_validate({"event_type": value, "resource_type": "Order", "resource_id": 1})

    def test_unknown_fields_ignored(self):
        payload = WebhookPayload.model_validate(
            {"event_type": "low_stock", "resource_type": "Sellable", "resource_id": 9, "extra": True}
        )
        assert payload.event_type == "low_stock"


class TestWebhookEvent:
    def test_topic(self):
        event = WebhookEvent("updated", "Order", 42)
        assert event.topic == "Order.updated"

    def test_json_round_trip_preserves_fields(self):
        event = WebhookEvent("shipped", "Shipment", "shp_1", {"carrier": "USPS"}, received_at=1700000000.5)
        restored = WebhookEvent.from_json(event.to_json())
        assert restored == event

    def test_events_are_immutable(self):
        event = WebhookEvent("updated", "Order", 42)
        with pytest.raises(AttributeError):
            event.resource_id = 43  # type: ignore[misc]

    def test_payload_is_read_only_copy(self):
        data = {"status": "shipped", "lines": [{"sku": "A1", "qty": 2}]}
        event = WebhookEvent("updated", "Order", 42, data)

        data["status"] = "cancelled"
        with pytest.raises(TypeError):
            event.payload["status"] = "tampered"  # type: ignore[index]
        with pytest.raises(TypeError):
            event.payload["lines"][0]["qty"] = 99  # type: ignore[index]

        assert event.payload["status"] == "shipped"
        assert event.to_dict()["payload"] == {"status": "shipped", "lines": [{"sku": "A1", "qty": 2}]}
        assert WebhookEvent.from_json(event.to_json()) == event
