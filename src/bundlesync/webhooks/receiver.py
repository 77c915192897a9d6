"""Webhook receiver -- authenticate, validate, deduplicate, dispatch.

Order of checks for one delivery:

1. HMAC signature over the raw body. A bad or missing signature stops here:
   nothing is parsed and no row is written.
2. Topic header. Topics we do not handle are logged and acknowledged.
3. Payload schema for the topic. Invalid payloads are rejected.
4. Unique insert of the dedupe key. A duplicate is acknowledged without
   being processed again.
5. Processing is submitted to the background pool; the receiver returns
   without awaiting it.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, ValidationError

from src.bundlesync.core.monitoring import webhook_events_total
from src.bundlesync.sync.worker import SyncTaskPool
from src.bundlesync.webhooks.dedupe import compute_dedupe_key, resource_id
from src.bundlesync.webhooks.processor import EventProcessor
from src.bundlesync.webhooks.repository import WebhookEventRepository
from src.bundlesync.webhooks.schemas import WebhookTopic, parse_payload
from src.bundlesync.webhooks.verification import verify_signature

logger = structlog.get_logger(__name__)

HMAC_HEADER = "x-shopify-hmac-sha256"
TOPIC_HEADER = "x-shopify-topic"
EVENT_ID_HEADER = "x-shopify-webhook-id"
TRIGGERED_AT_HEADER = "x-shopify-triggered-at"


class ReceiveStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNAUTHORIZED = "unauthorized"
    MALFORMED = "malformed"


class ReceiveResult(BaseModel):
    status: ReceiveStatus
    topic: str | None = None
    event_id: str | None = None
    dedupe_key: str | None = None
    detail: str | None = None


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive; Starlette headers are not.
        for key, candidate in headers.items():
            if key.lower() == name:
                return candidate
    return value


class WebhookReceiver:
    """Admits inbound platform events exactly once and dispatches them.

    Args:
        secret: Shared HMAC secret. Empty means every delivery is rejected.
        repository: WebhookEvent store providing the unique-key insert.
        processor: Runs handlers for admitted events.
        pool: Background pool the processing runs on.
    """

    def __init__(
        self,
        secret: str,
        repository: WebhookEventRepository,
        processor: EventProcessor,
        pool: SyncTaskPool,
    ) -> None:
        self._secret = secret
        self._repository = repository
        self._processor = processor
        self._pool = pool

    async def receive(
        self,
        body: bytes,
        headers: Mapping[str, str],
        remote_addr: str | None = None,
    ) -> ReceiveResult:
        raw_topic = _header(headers, TOPIC_HEADER)

        if not verify_signature(body, _header(headers, HMAC_HEADER), self._secret):
            logger.warning(
                "webhook.signature_invalid",
                topic=raw_topic,
                remote_addr=remote_addr,
                secret_configured=bool(self._secret),
            )
            return self._result(ReceiveStatus.UNAUTHORIZED, raw_topic)

        topic = WebhookTopic.parse(raw_topic)
        if topic is None:
            logger.info("webhook.topic_ignored", topic=raw_topic)
            return self._result(ReceiveStatus.IGNORED, raw_topic)

        try:
            payload = parse_payload(topic, body)
        except ValidationError as exc:
            logger.warning(
                "webhook.payload_invalid",
                topic=topic.value,
                errors=exc.error_count(),
            )
            return self._result(
                ReceiveStatus.MALFORMED, topic.value, detail=f"{exc.error_count()} validation error(s)"
            )

        dedupe_key = compute_dedupe_key(
            topic,
            payload,
            body,
            event_id=_header(headers, EVENT_ID_HEADER),
            triggered_at=_header(headers, TRIGGERED_AT_HEADER),
        )
        event = await self._repository.admit(dedupe_key, topic.value, resource_id(payload))
        if event is None:
            logger.info("webhook.duplicate", topic=topic.value, dedupe_key=dedupe_key)
            return self._result(ReceiveStatus.DUPLICATE, topic.value, dedupe_key=dedupe_key)

        self._pool.submit(
            self._processor.process(
                event.id, topic, payload, event.received_at or datetime.now(timezone.utc)
            ),
            name=f"webhook:{topic.value}:{event.id}",
        )
        logger.info(
            "webhook.accepted",
            topic=topic.value,
            event_id=event.id,
            resource_id=event.external_resource_id,
        )
        return self._result(
            ReceiveStatus.ACCEPTED, topic.value, event_id=event.id, dedupe_key=dedupe_key
        )

    @staticmethod
    def _result(
        status: ReceiveStatus,
        topic: str | None,
        *,
        event_id: str | None = None,
        dedupe_key: str | None = None,
        detail: str | None = None,
    ) -> ReceiveResult:
        webhook_events_total.labels(topic=topic or "unknown", outcome=status.value).inc()
        return ReceiveResult(
            status=status,
            topic=topic,
            event_id=event_id,
            dedupe_key=dedupe_key,
            detail=detail,
        )
