from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from tenantplane.core.errors import NotFoundError


# Normalized payment event kinds the ingestor acts on.
SUBSCRIPTION_CREATED = "subscription.created"
SUBSCRIPTION_ACTIVATED = "subscription.activated"
SUBSCRIPTION_PAUSED = "subscription.paused"
SUBSCRIPTION_PAST_DUE = "subscription.past_due"
SUBSCRIPTION_RESUMED = "subscription.resumed"
SUBSCRIPTION_CANCELED = "subscription.canceled"


@dataclass(frozen=True)
class PaymentEvent:
    provider: str
    event_id: str
    event_type: str
    subscription_id: str | None
    owner_id: str | None
    price_id: str | None
    tenant_name: str | None = None
    region: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentProviderAdapter(Protocol):
    name: str

    def verify(self, headers: Mapping[str, str], raw_body: bytes) -> None:
        """Raise WebhookSignatureError unless the body is authentic."""
        ...

    def parse(self, raw_body: bytes) -> PaymentEvent:
        ...


class WebhookProviderRegistry:
    # Populated explicitly at startup; unknown providers are a 404, never a fallback.
    def __init__(self) -> None:
        self._adapters: dict[str, PaymentProviderAdapter] = {}

    def register(self, adapter: PaymentProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> PaymentProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise NotFoundError(f"unknown webhook provider: {name}")
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)
