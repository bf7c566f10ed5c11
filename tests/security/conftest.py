"""HTTP-level test fixtures.

Responsibilities:
- Builds a ``Gateway`` with test settings and an in-memory event store
  that reports itself durable (stands in for Redis)
- Wraps the FastAPI app in a TestClient (lifespan runs: dispatcher starts)
- Provides a signer for webhook bodies

The global tests/conftest.py handles settings factories and the fake clock.
"""

from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from commerce_gateway.app import Gateway, create_app
from commerce_gateway.webhooks.store import MemoryEventStore
from commerce_gateway.webhooks.verification import SIGNATURE_HEADER, sign

WEBHOOK_SECRET = "whsec-test-secret"


class DurableMemoryEventStore(MemoryEventStore):
    durable = True


@pytest.fixture
def event_store():
    return DurableMemoryEventStore(retention_seconds=3600)


@pytest.fixture
def gateway(settings_factory, event_store):
    settings = settings_factory(webhook_secret=WEBHOOK_SECRET, webhook_rate_limit="1000/minute")
    return Gateway(settings, event_store=event_store)


@pytest.fixture
def app(gateway):
    return create_app(gateway)


@pytest.fixture
def client(app):
    """TestClient from the webhook sender's perspective."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture
def signed():
    """Factory: (payload dict or raw bytes, secret) -> (body, headers)."""

    def _make(payload, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict[str, str]]:
        body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        headers = {SIGNATURE_HEADER: sign(body, secret), "Content-Type": "application/json"}
        return body, headers

    return _make
