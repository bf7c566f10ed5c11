"""Composition root and FastAPI app factory.

``Gateway`` owns every per-process instance: one token bucket, response
cache and client per provider, the event store, the subscription registry,
the dispatcher and the webhook ingestor. Nothing is a module-level
singleton; business handlers receive the gateway (or a client from it).

Usage:
    gateway = await Gateway.create()
    gateway.subscribe("Order.updated", on_order_updated)
    app = create_app(gateway)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from commerce_gateway import __version__
from commerce_gateway.client import ResilientClient
from commerce_gateway.config import GatewaySettings
from commerce_gateway.errors import ConfigurationError, StorageError
from commerce_gateway.resilience.cache import MemoryCacheBackend, RedisCacheBackend, ResponseCache
from commerce_gateway.resilience.rate_limit import RateLimiter
from commerce_gateway.resilience.retry import RetryPolicy
from commerce_gateway.storage import connect_redis
from commerce_gateway.webhooks.dispatcher import Dispatcher, Handler, Subscription, SubscriptionRegistry
from commerce_gateway.webhooks.handlers import register_webhook_routes
from commerce_gateway.webhooks.ingest import WebhookIngestor
from commerce_gateway.webhooks.store import EventStore, MemoryEventStore, RedisEventStore
from commerce_gateway.webhooks.verification import WebhookVerifier

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # httpx logs every request at INFO; OUTBOUND_CALL already covers it
    logging.getLogger("httpx").setLevel(logging.WARNING)


class Gateway:
    """Per-process container for the resilience and ingestion layer.

    Args:
        settings: Loaded settings.
        redis_client: Connected ``redis.asyncio`` client, or None for
            in-memory caches and an in-memory event store.
        http_client: Optional shared ``httpx.AsyncClient`` for all providers.
        event_store: Override the event store (tests).
    """

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        redis_client: Any = None,
        http_client: httpx.AsyncClient | None = None,
        event_store: EventStore | None = None,
    ) -> None:
        self.settings = settings
        self._redis = redis_client
        self.limiter = RateLimiter()
        self.retry_policy = RetryPolicy(
            max_attempts=settings.max_retry_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )
        self.caches: dict[str, ResponseCache] = {}
        self.clients: dict[str, ResilientClient] = {}

        for name, provider in settings.providers.items():
            self.limiter.add_provider(name, provider.rate_limit_capacity, provider.rate_limit_refill)
            backend = RedisCacheBackend(redis_client) if redis_client is not None else MemoryCacheBackend()
            self.caches[name] = ResponseCache(backend, default_ttl=provider.cache_ttl)
            self.clients[name] = ResilientClient(
                provider,
                limiter=self.limiter,
                cache=self.caches[name],
                retry_policy=self.retry_policy,
                timeout=settings.request_timeout,
                http_client=http_client,
            )

        if event_store is None:
            if redis_client is not None:
                event_store = RedisEventStore(redis_client, settings.event_retention_seconds)
            else:
                event_store = MemoryEventStore(settings.event_retention_seconds)
        self.store = event_store

        self.registry = SubscriptionRegistry()
        self.dispatcher = Dispatcher(self.registry, queue_size=settings.dispatch_queue_size)
        self.ingestor = WebhookIngestor(
            WebhookVerifier(settings.webhook_secret),
            self.store,
            self.dispatcher,
            max_body_bytes=settings.webhook_max_body_bytes,
        )
        self._purge_task: asyncio.Task | None = None

    @classmethod
    async def create(cls, settings: GatewaySettings | None = None, **kwargs: Any) -> "Gateway":
        """Load settings (if not given), connect the durable store and build."""
        settings = settings or GatewaySettings.from_env()
        redis_client = await connect_redis(settings.redis_url)
        return cls(settings, redis_client=redis_client, **kwargs)

    def client(self, provider: str) -> ResilientClient:
        try:
            return self.clients[provider]
        except KeyError:
            raise ConfigurationError(f"Unknown provider: {provider}") from None

    def subscribe(self, pattern: str, handler: Handler, name: str | None = None) -> Subscription:
        return self.registry.subscribe(pattern, handler, name=name)

    def unsubscribe(self, name: str) -> bool:
        return self.registry.unsubscribe(name)

    async def start(self) -> None:
        self.dispatcher.start()
        if self.settings.purge_interval_seconds > 0:
            self._purge_task = asyncio.create_task(self._purge_loop(), name="webhook-event-purge")
        logger.info(
            "Gateway started: providers=%s durable_store=%s",
            ",".join(self.clients),
            self.store.durable,
        )

    async def stop(self) -> None:
        if self._purge_task is not None:
            self._purge_task.cancel()
            await asyncio.gather(self._purge_task, return_exceptions=True)
            self._purge_task = None
        await self.dispatcher.stop(drain=True)
        for client in self.clients.values():
            await client.aclose()
        if self._redis is not None:
            await self._redis.aclose()
        logger.info("Gateway stopped")

    async def purge_events(self) -> int:
        """Remove stored events older than the retention window."""
        return await self.store.purge_older_than(self.settings.event_retention_seconds)

    async def _purge_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.purge_interval_seconds)
            try:
                await self.purge_events()
            except StorageError:
                logger.warning("Periodic event purge failed, will retry next interval", exc_info=True)

    def health(self) -> dict[str, Any]:
        """Rate-limit occupancy, cache counters and webhook counters."""
        return {
            "status": "healthy",
            "version": __version__,
            "rate_limits": self.limiter.snapshot(),
            "caches": {name: cache.stats.as_dict() for name, cache in self.caches.items()},
            "clients": {name: client.stats.as_dict() for name, client in self.clients.items()},
            "webhooks": {
                "durable_store": self.store.durable,
                "verification_configured": self.ingestor.verifier.configured,
                "ingest": self.ingestor.stats.as_dict(),
                "dispatch": self.dispatcher.stats.as_dict(),
                "subscriptions": len(self.registry),
            },
        }


def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Handle inbound rate limit exceeded errors."""
    retry_after = getattr(exc, "retry_after", 60)
    return JSONResponse(
        {"error": "Rate limit exceeded", "retry_after": retry_after},
        status_code=429,
        headers={"Retry-After": str(retry_after)},
    )


def create_app(gateway: Gateway | None = None, settings: GatewaySettings | None = None) -> FastAPI:
    """Build the FastAPI app.

    With no ``gateway`` the lifespan builds one from the environment
    (connecting Redis if ``REDIS_URL`` is set). A supplied gateway is only
    started and stopped.
    """
    settings = settings or (gateway.settings if gateway is not None else GatewaySettings.from_env())
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gw = gateway or await Gateway.create(settings)
        app.state.gateway = gw
        await gw.start()
        try:
            yield
        finally:
            await gw.stop()

    app = FastAPI(title="Commerce Gateway", version=__version__, lifespan=lifespan)

    limiter = Limiter(key_func=get_remote_address)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    if gateway is not None:
        app.state.gateway = gateway

    register_webhook_routes(app, limiter, settings.webhook_rate_limit)

    @app.get("/health")
    async def health(request: Request):
        """Operational counters (read-only)."""
        return request.app.state.gateway.health()

    return app
