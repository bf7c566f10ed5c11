"""Provider profiles: base URL, auth header, health path and default limits.

EasyPost authenticates with HTTP Basic (API key as username, empty password).
Veeqo authenticates with an ``x-api-key`` header. Rate-limit defaults follow
the providers' published ceilings (Veeqo: bucket of 100, leaking 5/second).
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
from typing import Callable

EASYPOST = "easypost"
VEEQO = "veeqo"


def _basic_auth(api_key: str) -> dict[str, str]:
    token = base64.b64encode(f"{api_key}:".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}


def _api_key_header(api_key: str) -> dict[str, str]:
    return {"x-api-key": api_key}


@dataclass(frozen=True)
class ProviderProfile:
    """Static description of a provider's REST API."""

    name: str
    default_base_url: str
    auth_headers: Callable[[str], dict[str, str]]
    health_path: str
    default_capacity: int
    default_refill_rate: float
    user_agent: str = "commerce-gateway/0.1.0"


PROFILES: dict[str, ProviderProfile] = {
    EASYPOST: ProviderProfile(
        name=EASYPOST,
        default_base_url="https://api.easypost.com/v2",
        auth_headers=_basic_auth,
        health_path="/users",
        default_capacity=5,
        default_refill_rate=5.0,
    ),
    VEEQO: ProviderProfile(
        name=VEEQO,
        default_base_url="https://api.veeqo.com",
        auth_headers=_api_key_header,
        health_path="/current_user",
        default_capacity=100,
        default_refill_rate=5.0,
    ),
}


def get_profile(name: str) -> ProviderProfile:
    """Look up a provider profile by name (case-insensitive)."""
    try:
        return PROFILES[name.lower()]
    except KeyError:
        raise KeyError(f"Unknown provider: {name}") from None
