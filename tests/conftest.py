"""Shared fixtures for the commerce gateway test suite."""

from __future__ import annotations

import asyncio

import pytest

from commerce_gateway.config import GatewaySettings, ProviderSettings
from commerce_gateway.providers import EASYPOST, VEEQO

WEBHOOK_SECRET = "whsec-test-secret"


class FakeClock:
    """Manual clock with an async sleep that advances it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


def make_provider_settings(name: str = VEEQO, **overrides) -> ProviderSettings:
    values = {
        "name": name,
        "api_key": f"{name}-test-key",
        "base_url": f"https://{name}.test",
        "rate_limit_capacity": 100,
        "rate_limit_refill": 100.0,
        "cache_ttl": 30,
    }
    values.update(overrides)
    return ProviderSettings(**values)


def make_settings(**overrides) -> GatewaySettings:
    values = {
        "providers": {
            EASYPOST: make_provider_settings(EASYPOST),
            VEEQO: make_provider_settings(VEEQO),
        },
        "retry_base_delay": 0.0,
        "retry_max_delay": 0.0,
        "webhook_secret": WEBHOOK_SECRET,
        "webhook_max_body_bytes": 4096,
    }
    values.update(overrides)
    return GatewaySettings(**values)


@pytest.fixture()
def settings() -> GatewaySettings:
    return make_settings()


@pytest.fixture()
def settings_factory():
    """Build ``GatewaySettings`` with test defaults and keyword overrides."""
    return make_settings


@pytest.fixture()
def provider_settings_factory():
    return make_provider_settings
