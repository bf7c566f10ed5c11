"""Webhook event model.

``WebhookPayload`` validates the JSON body sent by the provider;
``WebhookEvent`` is the immutable, verified unit that gets stored and
dispatched.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Known values (informational; unknown types are still accepted and dispatched)
EVENT_TYPES = frozenset(
    {
        "created",
        "updated",
        "deleted",
        "status_changed",
        "shipped",
        "cancelled",
        "inventory_changed",
        "low_stock",
        "delivered",
    }
)
RESOURCE_TYPES = frozenset({"Order", "Product", "Sellable", "StockEntry", "Customer", "Shipment"})


def _now() -> float:
    return time.time()


def _freeze(value: Any) -> Any:
    """Read-only copy of a JSON value: mappings become proxies, lists tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


class WebhookPayload(BaseModel):
    """Inbound webhook body: ``{event_type, resource_type, resource_id, data}``."""

    model_config = ConfigDict(extra="ignore")

    event_type: str = Field(min_length=1, max_length=64)
    resource_type: str = Field(min_length=1, max_length=64)
    resource_id: int | str
    data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type", "resource_type")
    @classmethod
    def _no_separators(cls, value: str) -> str:
        value = value.strip()
        if not value or any(c in value for c in ".:* "):
            raise ValueError("must be a plain identifier")
        return value

    @field_validator("resource_id")
    @classmethod
    def _id_not_blank(cls, value: int | str) -> int | str:
        if isinstance(value, str):
            value = value.strip()
            if not value or ":" in value:
                raise ValueError("resource_id must be a non-empty identifier")
        return value


@dataclass(frozen=True)
class WebhookEvent:
    """A verified webhook event. Immutable once created.

    ``payload`` is stored as a read-only copy, so one subscriber cannot change
    what the next one (or the in-memory history) sees.
    """

    event_type: str
    resource_type: str
    resource_id: int | str
    payload: Mapping[str, Any] = field(default_factory=dict)
    received_at: float = field(default_factory=_now)

    def __post_init__(self) -> None:
        object.__setattr__(self, "payload", _freeze(self.payload))

    @property
    def topic(self) -> str:
        return f"{self.resource_type}.{self.event_type}"

    @classmethod
    def from_payload(cls, payload: WebhookPayload, received_at: float | None = None) -> "WebhookEvent":
        return cls(
            event_type=payload.event_type,
            resource_type=payload.resource_type,
            resource_id=payload.resource_id,
            payload=payload.data,
            received_at=time.time() if received_at is None else received_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "payload": _thaw(self.payload),
            "received_at": self.received_at,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "WebhookEvent":
        data = json.loads(raw)
        return cls(
            event_type=data["event_type"],
            resource_type=data["resource_type"],
            resource_id=data["resource_id"],
            payload=data.get("payload") or {},
            received_at=float(data["received_at"]),
        )
