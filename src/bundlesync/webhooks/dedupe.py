"""Idempotency keys for inbound webhook events."""

from __future__ import annotations

import hashlib
from typing import Any

from src.bundlesync.webhooks.schemas import WebhookTopic


def resource_id(payload: Any) -> str:
    """The platform id of the resource the event is about."""
    return str(payload.id)


def _payload_timestamp(payload: Any) -> str | None:
    for attr in ("updated_at", "created_at"):
        value = getattr(payload, attr, None)
        if value is not None:
            return value.isoformat()
    return None


def compute_dedupe_key(
    topic: WebhookTopic,
    payload: Any,
    body: bytes,
    *,
    event_id: str | None = None,
    triggered_at: str | None = None,
) -> str:
    """Build the key that identifies one logical event across redeliveries.

    The provider's event id wins when present. Otherwise the key is
    ``topic:resource:timestamp``, using the payload's own timestamp, then the
    delivery's triggered-at header, then a digest of the body.
    """
    if event_id:
        return f"event:{event_id.strip()}"
    stamp = _payload_timestamp(payload) or (triggered_at or "").strip()
    if not stamp:
        stamp = "sha256-" + hashlib.sha256(body).hexdigest()[:32]
    return f"{topic.value}:{resource_id(payload)}:{stamp}"
