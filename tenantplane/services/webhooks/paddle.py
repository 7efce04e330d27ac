from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any, Callable, Mapping

from tenantplane.core.errors import ValidationError, WebhookSignatureError
from tenantplane.services.webhooks.base import PaymentEvent


SIGNATURE_HEADER = "paddle-signature"


def build_paddle_signature(secret: str, timestamp: str, raw_body: bytes) -> str:
    # Paddle signs "{ts}:{raw body}" with HMAC-SHA256.
    signed = timestamp.encode("utf-8") + b":" + raw_body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def parse_signature_header(value: str) -> tuple[str | None, list[str]]:
    timestamp: str | None = None
    digests: list[str] = []
    for part in value.split(";"):
        key, _, item = part.strip().partition("=")
        if key == "ts":
            timestamp = item
        elif key == "h1" and item:
            digests.append(item)
    return timestamp, digests


class PaddleAdapter:
    name = "paddle"

    def __init__(
        self,
        secret: str | None,
        *,
        max_skew_seconds: int = 300,
        time_source: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret
        self._max_skew = max_skew_seconds
        self._time = time_source

    def verify(self, headers: Mapping[str, str], raw_body: bytes) -> None:
        if not self._secret:
            raise WebhookSignatureError("paddle webhook secret is not configured")
        header = None
        for key, value in headers.items():
            if key.lower() == SIGNATURE_HEADER:
                header = value
                break
        if not header:
            raise WebhookSignatureError("missing Paddle-Signature header")
        timestamp, digests = parse_signature_header(header)
        if not timestamp or not digests:
            raise WebhookSignatureError("malformed Paddle-Signature header")
        try:
            signed_at = int(timestamp)
        except ValueError as exc:
            raise WebhookSignatureError("malformed Paddle-Signature timestamp") from exc
        if abs(self._time() - signed_at) > self._max_skew:
            raise WebhookSignatureError("Paddle-Signature timestamp outside allowed skew")
        expected = build_paddle_signature(self._secret, timestamp, raw_body)
        # Several h1 values are sent while Paddle rotates the secret.
        if not any(hmac.compare_digest(expected, digest) for digest in digests):
            raise WebhookSignatureError("Paddle-Signature mismatch")

    def parse(self, raw_body: bytes) -> PaymentEvent:
        try:
            body: dict[str, Any] = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("webhook body is not valid JSON") from exc
        if not isinstance(body, dict) or not body.get("event_id") or not body.get("event_type"):
            raise ValidationError("webhook body is missing event_id or event_type")
        data = body.get("data") or {}
        custom = data.get("custom_data") or {}
        items = data.get("items") or []
        price_id = None
        if items:
            price_id = ((items[0] or {}).get("price") or {}).get("id")
        return PaymentEvent(
            provider=self.name,
            event_id=str(body["event_id"]),
            event_type=str(body["event_type"]),
            subscription_id=data.get("id"),
            owner_id=custom.get("owner_id") or data.get("customer_id"),
            price_id=price_id,
            tenant_name=custom.get("tenant_name"),
            region=custom.get("region"),
            raw=body,
        )
