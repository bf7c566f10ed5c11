"""Webhook HTTP handlers: FastAPI routes for inbound provider webhooks.

POST /webhook:
1. Rejects oversized bodies (413) before reading them when Content-Length allows
2. Reads the raw body (needed for HMAC verification)
3. Hands it to the ingestor: verify -> parse -> store -> dispatch
4. Returns 200 as soon as the event is stored and queued; subscriber
   handlers run afterwards

Security contract:
- Never return error details to the webhook caller (info disclosure)
- 400 for signature and payload failures alike
- Inbound requests are throttled per client IP (slowapi)
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter

from commerce_gateway.errors import (
    StorageError,
    WebhookPayloadError,
    WebhookPayloadTooLarge,
    WebhookVerificationError,
)
from commerce_gateway.webhooks.ingest import WebhookIngestor
from commerce_gateway.webhooks.verification import SIGNATURE_HEADER

logger = logging.getLogger(__name__)


def _ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.gateway.ingestor


def _declared_length(request: Request) -> int | None:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


async def _handle_webhook(request: Request) -> JSONResponse:
    """Receive one signed webhook. Returns 200, 400 or 413 with a generic body."""
    ingestor = _ingestor(request)

    declared = _declared_length(request)
    if declared is not None and declared > ingestor.max_body_bytes:
        ingestor.stats.received += 1
        ingestor.stats.payload_errors += 1
        logger.warning("Webhook rejected: declared body %d bytes exceeds limit", declared)
        return JSONResponse({"status": "payload_too_large"}, status_code=413)

    body = await request.body()
    try:
        result = await ingestor.ingest(body, request.headers.get(SIGNATURE_HEADER))
    except WebhookPayloadTooLarge:
        return JSONResponse({"status": "payload_too_large"}, status_code=413)
    except (WebhookVerificationError, WebhookPayloadError):
        return JSONResponse({"status": "rejected"}, status_code=400)

    return JSONResponse({"status": result.status.value}, status_code=200)


def register_webhook_routes(app: FastAPI, limiter: Limiter, rate_limit: str = "600/minute") -> None:
    """Register webhook endpoint routes on the FastAPI app.

    The ingestor is resolved per request from ``app.state.gateway`` so the
    routes can be registered before the gateway is started.
    """

    @app.post("/webhook")
    @limiter.limit(rate_limit)
    async def receive_webhook(request: Request):
        """Receive a provider webhook (signature-verified)."""
        return await _handle_webhook(request)

    @app.get("/webhook/events")
    async def recent_events(request: Request, limit: int = Query(50, ge=1, le=500)):
        """Recently stored events, newest first."""
        try:
            events = await _ingestor(request).store.recent(limit)
        except StorageError:
            logger.warning("Event store unavailable while listing recent events", exc_info=True)
            return JSONResponse({"error": "Event store unavailable"}, status_code=503)
        return {"events": [e.to_dict() for e in events], "count": len(events)}

    @app.get("/webhook/health")
    async def webhook_health(request: Request):
        """Ingestion and dispatch counters."""
        ingestor = _ingestor(request)
        return {
            "status": "healthy",
            "verification_configured": ingestor.verifier.configured,
            "durable_store": ingestor.store.durable,
            "ingest": ingestor.stats.as_dict(),
            "dispatch": ingestor.dispatcher.stats.as_dict(),
        }

    logger.info("Webhook routes registered: /webhook, /webhook/events, /webhook/health")
