"""Webhook ingestion path: size check -> verify -> parse -> store -> dispatch.

Verification runs on the raw body before any JSON parsing. A rejected
webhook is never stored or dispatched. Once verified and parsed, an event
is always dispatched, even when the durable store is down; the result says
which of the two happened:

- ``IngestStatus.STORED``                    recorded durably and queued
- ``IngestStatus.DISPATCHED_NOT_PERSISTED``  queued only (degraded mode)
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import ValidationError

from commerce_gateway.errors import (
    WebhookPayloadError,
    WebhookPayloadTooLarge,
    WebhookVerificationError,
)
from commerce_gateway.webhooks.dispatcher import Dispatcher
from commerce_gateway.webhooks.models import WebhookEvent, WebhookPayload
from commerce_gateway.webhooks.store import EventStore
from commerce_gateway.webhooks.verification import WebhookVerifier

logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    STORED = "stored"
    DISPATCHED_NOT_PERSISTED = "dispatched_not_persisted"


@dataclass(frozen=True)
class IngestResult:
    status: IngestStatus
    event: WebhookEvent

    @property
    def persisted(self) -> bool:
        return self.status is IngestStatus.STORED


@dataclass
class IngestStats:
    received: int = 0
    processed: int = 0
    verification_failures: int = 0
    payload_errors: int = 0
    storage_failures: int = 0
    last_processed: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "received": self.received,
            "processed": self.processed,
            "verification_failures": self.verification_failures,
            "payload_errors": self.payload_errors,
            "storage_failures": self.storage_failures,
            "last_processed": self.last_processed,
        }


def _audit(event_type: str, resource: str, resource_id: Any, status: str, body_bytes: int) -> None:
    logger.info(
        "WEBHOOK_AUDIT event=%s resource=%s id=%s status=%s body_bytes=%d",
        event_type,
        resource,
        resource_id,
        status,
        body_bytes,
    )


class WebhookIngestor:
    """Turns a raw signed webhook delivery into a stored, dispatched event."""

    def __init__(
        self,
        verifier: WebhookVerifier,
        store: EventStore,
        dispatcher: Dispatcher,
        max_body_bytes: int = 1024 * 1024,
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.dispatcher = dispatcher
        self.max_body_bytes = max_body_bytes
        self.stats = IngestStats()

    async def ingest(self, raw_body: bytes, signature: str | None) -> IngestResult:
        """Verify, record and dispatch one webhook delivery.

        Raises:
            WebhookPayloadTooLarge: Body exceeds ``max_body_bytes``.
            WebhookVerificationError: Signature missing or invalid.
            WebhookPayloadError: Body is not a valid event payload.
        """
        self.stats.received += 1
        size = len(raw_body)

        if size > self.max_body_bytes:
            self.stats.payload_errors += 1
            _audit("unknown", "unknown", "unknown", "too_large", size)
            raise WebhookPayloadTooLarge(size, self.max_body_bytes)

        if not self.verifier.verify(raw_body, signature):
            self.stats.verification_failures += 1
            _audit("unknown", "unknown", "unknown", "signature_failed", size)
            raise WebhookVerificationError("Invalid webhook signature")

        payload = self._parse(raw_body)
        event = WebhookEvent.from_payload(payload)

        status = IngestStatus.STORED if self.store.durable else IngestStatus.DISPATCHED_NOT_PERSISTED
        try:
            await self.store.store(event)
        except Exception:
            self.stats.storage_failures += 1
            status = IngestStatus.DISPATCHED_NOT_PERSISTED
            logger.warning(
                "Event store unavailable, dispatching %s:%s without a durable record",
                event.topic,
                event.resource_id,
                exc_info=True,
            )

        self.dispatcher.notify(event)
        self.stats.processed += 1
        self.stats.last_processed = time.time()
        _audit(event.event_type, event.resource_type, event.resource_id, status.value, size)
        return IngestResult(status=status, event=event)

    def _parse(self, raw_body: bytes) -> WebhookPayload:
        try:
            data = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self.stats.payload_errors += 1
            _audit("unknown", "unknown", "unknown", "invalid_json", len(raw_body))
            raise WebhookPayloadError("Webhook body is not valid JSON") from None
        if not isinstance(data, dict):
            self.stats.payload_errors += 1
            _audit("unknown", "unknown", "unknown", "invalid_payload", len(raw_body))
            raise WebhookPayloadError("Webhook body must be a JSON object")
        try:
            return WebhookPayload.model_validate(data)
        except ValidationError as e:
            self.stats.payload_errors += 1
            _audit(
                str(data.get("event_type", "unknown")),
                str(data.get("resource_type", "unknown")),
                data.get("resource_id", "unknown"),
                "invalid_payload",
                len(raw_body),
            )
            raise WebhookPayloadError(
                "Invalid webhook payload",
                details={"fields": sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})},
            ) from None
