"""Tests for WebhookReceiver: signature, topic, schema, dedupe, dispatch.

The processor is an AsyncMock so these tests only see what the receiver
admits and dispatches; EventProcessor is covered in test_event_processor.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from src.bundlesync.webhooks.receiver import ReceiveStatus, WebhookReceiver
from src.bundlesync.webhooks.schemas import ProductPayload, WebhookTopic
from src.bundlesync.webhooks.verification import compute_signature

SECRET = "whsec_test"


def _delivery(topic: str, data: dict, *, event_id: str | None = "evt-1", secret: str = SECRET):
    body = json.dumps(data).encode()
    headers = {
        "X-Shopify-Topic": topic,
        "X-Shopify-Hmac-Sha256": compute_signature(body, secret),
    }
    if event_id:
        headers["X-Shopify-Webhook-Id"] = event_id
    return body, headers


@pytest.fixture
def processor():
    return AsyncMock()


@pytest.fixture
def receiver(webhook_repo, processor, pool):
    return WebhookReceiver(SECRET, webhook_repo, processor, pool)


# ── Authentication ──────────────────────────────────────────────────────────


class TestSignature:
    async def test_valid_delivery_is_accepted_and_dispatched(self, receiver, processor, pool, webhook_repo):
        body, headers = _delivery("products/update", {"id": "ext-123", "version": 9})

        result = await receiver.receive(body, headers)
        await pool.drain()

        assert result.status == ReceiveStatus.ACCEPTED
        assert result.dedupe_key == "event:evt-1"
        processor.process.assert_awaited_once()
        event_id, topic, payload, _ = processor.process.call_args.args
        assert event_id == result.event_id
        assert topic == WebhookTopic.PRODUCTS_UPDATE
        assert isinstance(payload, ProductPayload)
        assert payload.version == 9
        assert await webhook_repo.count() == 1

    async def test_bad_signature_writes_nothing(self, receiver, processor, webhook_repo):
        body, headers = _delivery("products/update", {"id": "ext-123"}, secret="wrong")

        result = await receiver.receive(body, headers)

        assert result.status == ReceiveStatus.UNAUTHORIZED
        assert await webhook_repo.count() == 0
        processor.process.assert_not_called()

    async def test_missing_signature(self, receiver, webhook_repo):
        body, headers = _delivery("products/update", {"id": "ext-123"})
        del headers["X-Shopify-Hmac-Sha256"]

        result = await receiver.receive(body, headers)

        assert result.status == ReceiveStatus.UNAUTHORIZED
        assert await webhook_repo.count() == 0

    async def test_signature_checked_before_parsing(self, receiver):
        body = b"{definitely not json"
        result = await receiver.receive(
            body, {"x-shopify-topic": "orders/paid", "x-shopify-hmac-sha256": "bogus"}
        )
        assert result.status == ReceiveStatus.UNAUTHORIZED

    async def test_unconfigured_secret_rejects_everything(self, webhook_repo, processor, pool):
        receiver = WebhookReceiver("", webhook_repo, processor, pool)
        body, headers = _delivery("products/update", {"id": "ext-123"}, secret="")

        result = await receiver.receive(body, headers)

        assert result.status == ReceiveStatus.UNAUTHORIZED
        assert await webhook_repo.count() == 0


# ── Topic & Schema ──────────────────────────────────────────────────────────


class TestTopicAndSchema:
    async def test_unknown_topic_is_acknowledged_and_ignored(self, receiver, processor, webhook_repo):
        body, headers = _delivery("customers/create", {"id": 1})

        result = await receiver.receive(body, headers)

        assert result.status == ReceiveStatus.IGNORED
        assert result.topic == "customers/create"
        assert await webhook_repo.count() == 0
        processor.process.assert_not_called()

    async def test_missing_required_field_is_malformed(self, receiver, webhook_repo):
        body, headers = _delivery("fulfillments/update", {"id": 5})

        result = await receiver.receive(body, headers)

        assert result.status == ReceiveStatus.MALFORMED
        assert result.detail == "1 validation error(s)"
        assert await webhook_repo.count() == 0

    async def test_wrong_type_is_malformed(self, receiver):
        body, headers = _delivery("products/update", {"id": "ext-123", "version": "9"})
        result = await receiver.receive(body, headers)
        assert result.status == ReceiveStatus.MALFORMED

    async def test_timestamp_without_offset_is_malformed(self, receiver, processor, webhook_repo):
        body, headers = _delivery(
            "products/update", {"id": "ext-123", "updated_at": "2026-03-01T12:00:00"}
        )

        result = await receiver.receive(body, headers)

        assert result.status == ReceiveStatus.MALFORMED
        assert await webhook_repo.count() == 0
        processor.process.assert_not_called()

    async def test_extra_fields_are_ignored(self, receiver):
        body, headers = _delivery(
            "products/update", {"id": "ext-123", "vendor": "Acme", "tags": ["new"]}
        )
        result = await receiver.receive(body, headers)
        assert result.status == ReceiveStatus.ACCEPTED


# ── Idempotency ─────────────────────────────────────────────────────────────


class TestDeduplication:
    async def test_replay_is_processed_once(self, receiver, processor, pool, webhook_repo):
        body, headers = _delivery("orders/paid", {"id": 1001, "financial_status": "paid"})

        first = await receiver.receive(body, headers)
        second = await receiver.receive(body, headers)
        await pool.drain()

        assert first.status == ReceiveStatus.ACCEPTED
        assert second.status == ReceiveStatus.DUPLICATE
        assert await webhook_repo.count() == 1
        assert processor.process.await_count == 1

    async def test_without_event_id_payload_timestamp_dedupes(self, receiver, webhook_repo):
        data = {"id": "ext-123", "updated_at": "2026-03-01T12:00:00Z"}
        body, headers = _delivery("products/update", data, event_id=None)
        # Redelivery re-serializes the same event differently.
        body2, headers2 = _delivery("products/update", dict(reversed(list(data.items()))), event_id=None)

        first = await receiver.receive(body, headers)
        second = await receiver.receive(body2, headers2)

        assert first.status == ReceiveStatus.ACCEPTED
        assert second.status == ReceiveStatus.DUPLICATE
        assert first.dedupe_key == "products/update:ext-123:2026-03-01T12:00:00+00:00"

    async def test_distinct_events_for_same_resource(self, receiver, webhook_repo):
        body, headers = _delivery("products/update", {"id": "ext-123"}, event_id="evt-a")
        body2, headers2 = _delivery("products/update", {"id": "ext-123"}, event_id="evt-b")

        await receiver.receive(body, headers)
        await receiver.receive(body2, headers2)

        assert await webhook_repo.count() == 2
