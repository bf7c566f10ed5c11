"""Tests for the webhook ingestion path (verify -> parse -> store -> dispatch).

Tests:
- Verified events are stored and queued (STORED)
- Store outage still dispatches (DISPATCHED_NOT_PERSISTED)
- Rejected webhooks are never stored or dispatched
- Counters and audit log lines
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from commerce_gateway.errors import (
    StorageError,
    WebhookPayloadError,
    WebhookPayloadTooLarge,
    WebhookVerificationError,
)
from commerce_gateway.webhooks.dispatcher import Dispatcher, SubscriptionRegistry
from commerce_gateway.webhooks.ingest import IngestStatus, WebhookIngestor
from commerce_gateway.webhooks.store import MemoryEventStore, NullEventStore
from commerce_gateway.webhooks.verification import WebhookVerifier, sign

SECRET = "ingest-secret"


def _body(**overrides) -> bytes:
    payload = {"event_type": "updated", "resource_type": "Order", "resource_id": 42, "data": {"status": "shipped"}}
    payload.update(overrides)
    return json.dumps(payload).encode()


class _DurableMemoryStore(MemoryEventStore):
    durable = True


def _ingestor(store=None, max_body_bytes: int = 4096) -> WebhookIngestor:
    dispatcher = Dispatcher(SubscriptionRegistry(), queue_size=10)
    return WebhookIngestor(
        WebhookVerifier(SECRET),
        store if store is not None else _DurableMemoryStore(),
        dispatcher,
        max_body_bytes=max_body_bytes,
    )


class TestIngest:
    @pytest.mark.asyncio
    async def test_verified_event_is_stored_and_queued(self):
        ingestor = _ingestor()
        body = _body()

        result = await ingestor.ingest(body, sign(body, SECRET))

        assert result.status is IngestStatus.STORED
        assert result.persisted is True
        assert result.event.topic == "Order.updated"
        assert result.event.resource_id == 42
        assert result.event.payload == {"status": "shipped"}
        assert [e.resource_id for e in await ingestor.store.recent(10)] == [42]
        assert ingestor.dispatcher.pending == 1
        assert ingestor.stats.processed == 1
        assert ingestor.stats.last_processed is not None

    @pytest.mark.asyncio
    async def test_store_failure_still_dispatches(self, caplog):
        store = MagicMock()
        store.durable = True
        store.store = AsyncMock(side_effect=StorageError("redis down"))
        ingestor = _ingestor(store=store)
        body = _body()

        with caplog.at_level("WARNING"):
            result = await ingestor.ingest(body, sign(body, SECRET))

        assert result.status is IngestStatus.DISPATCHED_NOT_PERSISTED
        assert ingestor.dispatcher.pending == 1
        assert ingestor.stats.storage_failures == 1
        assert "without a durable record" in caplog.text

    @pytest.mark.asyncio
    async def test_non_durable_store_reports_not_persisted(self):
        ingestor = _ingestor(store=NullEventStore())
        body = _body()

        result = await ingestor.ingest(body, sign(body, SECRET))

        assert result.status is IngestStatus.DISPATCHED_NOT_PERSISTED
        assert ingestor.stats.storage_failures == 0

    @pytest.mark.asyncio
    async def test_bad_signature_is_neither_stored_nor_dispatched(self):
        ingestor = _ingestor()
        body = _body()

        with pytest.raises(WebhookVerificationError):
            await ingestor.ingest(body, sign(body, "wrong"))

        assert await ingestor.store.recent(10) == []
        assert ingestor.dispatcher.pending == 0
        assert ingestor.stats.verification_failures == 1

    @pytest.mark.asyncio
    async def test_signature_checked_before_parsing(self):
        ingestor = _ingestor()
        with pytest.raises(WebhookVerificationError):
            await ingestor.ingest(b"not json at all", None)
        assert ingestor.stats.payload_errors == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"[1, 2, 3]",
            json.dumps({"event_type": "updated", "resource_id": 1}).encode(),
            json.dumps({"event_type": "", "resource_type": "Order", "resource_id": 1}).encode(),
        ],
    )
    async def test_malformed_payload_rejected(self, body):
        ingestor = _ingestor()

        with pytest.raises(WebhookPayloadError):
            await ingestor.ingest(body, sign(body, SECRET))

        assert ingestor.dispatcher.pending == 0
        assert ingestor.stats.payload_errors == 1

    @pytest.mark.asyncio
    async def test_oversized_body_rejected_before_verification(self):
        ingestor = _ingestor(max_body_bytes=64)
        body = _body(data={"blob": "x" * 200})

        with pytest.raises(WebhookPayloadTooLarge) as exc_info:
            await ingestor.ingest(body, sign(body, SECRET))

        assert exc_info.value.limit == 64
        assert ingestor.stats.verification_failures == 0

    @pytest.mark.asyncio
    async def test_audit_line_logged(self, caplog):
        ingestor = _ingestor()
        body = _body()

        with caplog.at_level("INFO"):
            await ingestor.ingest(body, sign(body, SECRET))

        assert "WEBHOOK_AUDIT event=updated resource=Order id=42 status=stored" in caplog.text
        assert SECRET not in caplog.text
