"""Out-of-band processing of admitted webhook events.

EventProcessor loads the local state a handler needs, runs the pure handler,
then applies its outcome: order/entitlement mutations through the
OrderRepository and sync transitions through the orchestrator. Failures are
recorded on the WebhookEvent row and never reach the webhook response.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.bundlesync.commerce.shopify import product_gid
from src.bundlesync.orders.repository import OrderRepository
from src.bundlesync.sync.orchestrator import SyncOrchestrator
from src.bundlesync.sync.repository import SyncRepository
from src.bundlesync.webhooks.handlers import (
    BUNDLE_ID_PROPERTY,
    HANDLERS,
    CreateOrder,
    GrantEntitlements,
    HandlerContext,
    HandlerOutcome,
    LinkedBundle,
    UpdateOrder,
)
from src.bundlesync.webhooks.repository import WebhookEventRepository
from src.bundlesync.webhooks.schemas import (
    FulfillmentPayload,
    OrderPayload,
    ProductDeletePayload,
    ProductPayload,
    WebhookTopic,
)

logger = structlog.get_logger(__name__)


class EventProcessor:
    """Runs the handler for one admitted event and applies its outcome.

    Args:
        sync_repository: Bundle and SyncRecord reads for handler context.
        order_repository: Order and entitlement persistence.
        webhook_repository: Marks events processed or failed.
        orchestrator: The only writer of SyncRecord status.
        echo_window_seconds: Suppression window after our own pushes.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        sync_repository: SyncRepository,
        order_repository: OrderRepository,
        webhook_repository: WebhookEventRepository,
        orchestrator: SyncOrchestrator,
        echo_window_seconds: float = 10.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sync = sync_repository
        self._orders = order_repository
        self._webhooks = webhook_repository
        self._orchestrator = orchestrator
        self._echo_window = timedelta(seconds=echo_window_seconds)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def process(
        self,
        event_id: str,
        topic: WebhookTopic,
        payload: Any,
        received_at: datetime | None = None,
    ) -> HandlerOutcome | None:
        """Process one event; returns None if processing failed.

        The failure is logged with its traceback and stored on the event row,
        leaving ``processed_at`` unset.
        """
        received_at = received_at or self._clock()
        try:
            context = await self._build_context(topic, payload, received_at)
            outcome = HANDLERS[topic](payload, context)
            await self._apply(outcome)
        except Exception as exc:
            logger.error(
                "webhook.processing_failed",
                event_id=event_id,
                topic=topic.value,
                error=str(exc),
                exc_info=True,
            )
            await self._webhooks.mark_failed(event_id, f"{type(exc).__name__}: {exc}")
            return None

        await self._webhooks.mark_processed(event_id)
        logger.info(
            "webhook.processed",
            event_id=event_id,
            topic=topic.value,
            mutations=len(outcome.mutations),
            transitions=len(outcome.transitions),
            notes=outcome.notes or None,
        )
        return outcome

    # ── Context ─────────────────────────────────────────────────────────

    async def _build_context(
        self, topic: WebhookTopic, payload: Any, received_at: datetime
    ) -> HandlerContext:
        context = HandlerContext(received_at=received_at, echo_window=self._echo_window)

        if isinstance(payload, OrderPayload):
            context.existing_order = await self._orders.get_by_external_id(payload.id)
            product_ids: set[str] = set()
            property_ids: list[str] = []
            for item in payload.line_items:
                if item.product_id is not None:
                    product_ids.update({item.product_id, product_gid(item.product_id)})
                prop = item.property_value(BUNDLE_ID_PROPERTY)
                if prop:
                    property_ids.append(prop)
            context.bundles_by_product = await self._sync.find_bundle_ids_by_external_ids(
                product_ids
            )
            if property_ids:
                bundles = await self._sync.list_bundles(bundle_ids=property_ids)
                context.known_bundle_ids = {b.id for b in bundles}

        elif isinstance(payload, FulfillmentPayload):
            context.existing_order = await self._orders.get_by_external_id(payload.order_id)

        elif isinstance(payload, (ProductPayload, ProductDeletePayload)):
            external_ids = payload.external_ids
            for record, bundle in await self._sync.find_records_for_products(external_ids):
                context.linked_bundles.append(
                    LinkedBundle(
                        record=record,
                        bundle=bundle,
                        own_product=record.external_id in external_ids,
                    )
                )

        return context

    # ── Apply ───────────────────────────────────────────────────────────

    async def _apply(self, outcome: HandlerOutcome) -> None:
        for mutation in outcome.mutations:
            if isinstance(mutation, CreateOrder):
                await self._orders.create_order(mutation.order)
            elif isinstance(mutation, UpdateOrder):
                await self._orders.update_order(mutation.external_order_id, mutation.changes)
            elif isinstance(mutation, GrantEntitlements):
                order = await self._orders.get_by_external_id(mutation.external_order_id)
                if order is None:
                    logger.warning(
                        "webhook.entitlements_without_order",
                        external_order_id=mutation.external_order_id,
                    )
                    continue
                await self._orders.grant_entitlements(
                    order.id, mutation.bundle_ids, mutation.customer_email
                )

        for request in outcome.transitions:
            await self._orchestrator.apply_event_transition(request)
