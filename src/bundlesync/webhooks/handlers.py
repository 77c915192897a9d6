"""Per-topic event handlers.

Each handler is a pure function of (validated payload, HandlerContext) that
returns the local mutations to apply and the SyncRecord transitions to
request. Handlers never touch the database or the platform; EventProcessor
loads the context beforehand and applies the outcome afterwards. Sync status
changes are only ever *requested* here, pinned to the record version the
handler saw, and go through the orchestrator's guarded transition.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel

from src.bundlesync.commerce.shopify import product_gid
from src.bundlesync.orders.schemas import (
    FulfillmentStatus,
    OrderCreate,
    OrderRead,
    OrderStatus,
    OrderUpdate,
    PaymentStatus,
)
from src.bundlesync.sync.conflict import UpdateClassification, classify_product_update
from src.bundlesync.sync.orchestrator import TransitionRequest
from src.bundlesync.sync.schemas import BundleRead, SyncRecordRead, SyncStatus, SyncTrigger
from src.bundlesync.webhooks.schemas import (
    FulfillmentInfo,
    FulfillmentPayload,
    OrderPayload,
    ProductDeletePayload,
    ProductPayload,
    WebhookTopic,
)

BUNDLE_ID_PROPERTY = "_bundle_id"
TRAINER_ID_PROPERTY = "_trainer_id"


# ── Context & Outcome ───────────────────────────────────────────────────────


@dataclass
class LinkedBundle:
    """A bundle whose own product, or one of whose components, an event names."""

    record: SyncRecordRead
    bundle: BundleRead
    own_product: bool


@dataclass
class HandlerContext:
    """Local state a handler needs, loaded before it runs."""

    received_at: datetime
    echo_window: timedelta
    existing_order: OrderRead | None = None
    bundles_by_product: dict[str, str] = field(default_factory=dict)
    known_bundle_ids: set[str] = field(default_factory=set)
    linked_bundles: list[LinkedBundle] = field(default_factory=list)


class CreateOrder(BaseModel):
    order: OrderCreate


class UpdateOrder(BaseModel):
    external_order_id: str
    changes: OrderUpdate


class GrantEntitlements(BaseModel):
    external_order_id: str
    bundle_ids: list[str]
    customer_email: str | None = None


Mutation = CreateOrder | UpdateOrder | GrantEntitlements


@dataclass
class HandlerOutcome:
    mutations: list[Mutation] = field(default_factory=list)
    transitions: list[TransitionRequest] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)


# ── Status Mapping ──────────────────────────────────────────────────────────


def map_financial_status(financial_status: str | None) -> PaymentStatus:
    status = (financial_status or "").lower()
    if status in ("paid", "partially_paid"):
        return PaymentStatus.PAID
    if status == "refunded":
        return PaymentStatus.REFUNDED
    if status == "partially_refunded":
        return PaymentStatus.PARTIALLY_REFUNDED
    return PaymentStatus.PENDING


def map_fulfillment_status(fulfillment_status: str | None) -> FulfillmentStatus:
    status = (fulfillment_status or "").lower()
    if status == "fulfilled":
        return FulfillmentStatus.FULFILLED
    if status == "partial":
        return FulfillmentStatus.PARTIAL
    if status == "restocked":
        return FulfillmentStatus.RESTOCKED
    return FulfillmentStatus.UNFULFILLED


# ── Orders ──────────────────────────────────────────────────────────────────


def attribute_bundles(order: OrderPayload, ctx: HandlerContext) -> list[str]:
    """Bundle ids the order's line items belong to, in line-item order.

    A line item belongs to a bundle when its product is a bundle's external
    product, or when its ``_bundle_id`` property names a known bundle.
    """
    bundle_ids: list[str] = []
    for item in order.line_items:
        candidates: list[str] = []
        if item.product_id is not None:
            for pid in (item.product_id, product_gid(item.product_id)):
                if pid in ctx.bundles_by_product:
                    candidates.append(ctx.bundles_by_product[pid])
                    break
        prop = item.property_value(BUNDLE_ID_PROPERTY)
        if prop and prop in ctx.known_bundle_ids:
            candidates.append(prop)
        for bundle_id in candidates:
            if bundle_id not in bundle_ids:
                bundle_ids.append(bundle_id)
    return bundle_ids


def _trainer_id(order: OrderPayload) -> str | None:
    for item in order.line_items:
        value = item.property_value(TRAINER_ID_PROPERTY)
        if value:
            return value
    return None


def _total_amount(order: OrderPayload) -> Decimal | None:
    if not order.total_price:
        return None
    try:
        return Decimal(order.total_price)
    except InvalidOperation:
        return None


def _order_create(
    order: OrderPayload,
    bundle_ids: list[str],
    payment_status: PaymentStatus | None = None,
) -> OrderCreate:
    payment = payment_status or map_financial_status(order.financial_status)
    return OrderCreate(
        external_order_id=order.id,
        order_number=order.name or order.order_number,
        customer_email=order.customer_email,
        customer_name=order.customer.full_name if order.customer else None,
        trainer_id=_trainer_id(order),
        bundle_ids=bundle_ids,
        line_items=[
            item.model_dump(mode="json", include={"id", "product_id", "title", "quantity", "price"})
            for item in order.line_items
        ],
        total_amount=_total_amount(order),
        currency=order.currency,
        payment_status=payment,
        fulfillment_status=map_fulfillment_status(order.fulfillment_status),
        status=OrderStatus.CONFIRMED if payment == PaymentStatus.PAID else OrderStatus.PENDING,
    )


def _tracking_changes(fulfillment: FulfillmentInfo) -> dict[str, Any]:
    return {
        "tracking_number": fulfillment.primary_tracking_number,
        "tracking_url": fulfillment.primary_tracking_url,
        "carrier": fulfillment.tracking_company,
        "estimated_delivery": fulfillment.estimated_delivery_at,
    }


def handle_order_created(order: OrderPayload, ctx: HandlerContext) -> HandlerOutcome:
    outcome = HandlerOutcome()
    if ctx.existing_order is not None:
        outcome.notes.append("order already recorded")
        return outcome
    outcome.mutations.append(CreateOrder(order=_order_create(order, attribute_bundles(order, ctx))))
    return outcome


def handle_order_paid(order: OrderPayload, ctx: HandlerContext) -> HandlerOutcome:
    """Mark the order paid and activate one entitlement per attributed bundle.

    An order we have not seen yet is created first, already paid.
    """
    outcome = HandlerOutcome()
    bundle_ids = attribute_bundles(order, ctx)

    if ctx.existing_order is None:
        outcome.mutations.append(
            CreateOrder(order=_order_create(order, bundle_ids, PaymentStatus.PAID))
        )
    else:
        for bundle_id in ctx.existing_order.bundle_ids:
            if bundle_id not in bundle_ids:
                bundle_ids.append(bundle_id)
        status = (
            OrderStatus.CONFIRMED
            if ctx.existing_order.status == OrderStatus.PENDING
            else None
        )
        outcome.mutations.append(
            UpdateOrder(
                external_order_id=order.id,
                changes=OrderUpdate(payment_status=PaymentStatus.PAID, status=status),
            )
        )

    if bundle_ids:
        outcome.mutations.append(
            GrantEntitlements(
                external_order_id=order.id,
                bundle_ids=bundle_ids,
                customer_email=order.customer_email,
            )
        )
    else:
        outcome.notes.append("no bundle line items; no entitlements granted")
    return outcome


def handle_order_fulfilled(order: OrderPayload, ctx: HandlerContext) -> HandlerOutcome:
    outcome = HandlerOutcome()
    existing = ctx.existing_order
    if existing is None:
        outcome.notes.append("order not found")
        return outcome

    changes: dict[str, Any] = {"fulfillment_status": FulfillmentStatus.FULFILLED}
    if existing.status != OrderStatus.DELIVERED:
        changes["status"] = OrderStatus.SHIPPED
    if order.fulfillments:
        changes.update(_tracking_changes(order.fulfillments[-1]))
    outcome.mutations.append(
        UpdateOrder(external_order_id=order.id, changes=OrderUpdate(**changes))
    )
    return outcome


def handle_fulfillment_updated(
    fulfillment: FulfillmentPayload, ctx: HandlerContext
) -> HandlerOutcome:
    """Copy tracking details onto the order and advance its delivery status."""
    outcome = HandlerOutcome()
    existing = ctx.existing_order
    if existing is None:
        outcome.notes.append("order not found")
        return outcome

    changes = _tracking_changes(fulfillment)
    if (fulfillment.shipment_status or "").lower() == "delivered":
        changes["status"] = OrderStatus.DELIVERED
        changes["fulfillment_status"] = FulfillmentStatus.FULFILLED
        changes["delivered_at"] = fulfillment.updated_at or ctx.received_at
    elif (fulfillment.status or "").lower() == "success":
        changes["fulfillment_status"] = FulfillmentStatus.FULFILLED
        if existing.status != OrderStatus.DELIVERED:
            changes["status"] = OrderStatus.SHIPPED

    outcome.mutations.append(
        UpdateOrder(external_order_id=fulfillment.order_id, changes=OrderUpdate(**changes))
    )
    return outcome


# ── Products ────────────────────────────────────────────────────────────────


def handle_product_updated(product: ProductPayload, ctx: HandlerContext) -> HandlerOutcome:
    """Flag synced bundles whose product or component was edited by a third party."""
    outcome = HandlerOutcome()
    for linked in ctx.linked_bundles:
        classification = classify_product_update(
            linked.record,
            own_product=linked.own_product,
            event_version=product.version,
            event_updated_at=product.updated_at,
            received_at=ctx.received_at,
            suppression_window=ctx.echo_window,
        )
        if classification != UpdateClassification.CONFLICT:
            outcome.notes.append(f"{linked.record.bundle_id}: {classification.value}")
            continue
        what = "bundle product" if linked.own_product else "component product"
        outcome.transitions.append(
            TransitionRequest(
                bundle_id=linked.record.bundle_id,
                expected_version=linked.record.version,
                to_status=SyncStatus.CONFLICT,
                trigger=SyncTrigger.EXTERNAL_EDIT,
                detail=f"external edit of {what} {product.id}",
            )
        )
    return outcome


def handle_product_deleted(product: ProductDeletePayload, ctx: HandlerContext) -> HandlerOutcome:
    """Take synced bundles that depended on the deleted product out of ``synced``.

    The bundle's own product being gone means it must be re-published
    (failed). A deleted component needs a human decision (conflict). The
    component reference itself is left in place.
    """
    outcome = HandlerOutcome()
    for linked in ctx.linked_bundles:
        if linked.record.status != SyncStatus.SYNCED:
            outcome.notes.append(f"{linked.record.bundle_id}: {linked.record.status.value}")
            continue
        if linked.own_product:
            request = TransitionRequest(
                bundle_id=linked.record.bundle_id,
                expected_version=linked.record.version,
                to_status=SyncStatus.FAILED,
                trigger=SyncTrigger.EXTERNAL_DELETED,
                detail="external product deleted; re-publish required",
            )
        else:
            request = TransitionRequest(
                bundle_id=linked.record.bundle_id,
                expected_version=linked.record.version,
                to_status=SyncStatus.CONFLICT,
                trigger=SyncTrigger.COMPONENT_DELETED,
                detail=f"component product {product.id} deleted",
            )
        outcome.transitions.append(request)
    return outcome


HANDLERS: dict[WebhookTopic, Callable[[Any, HandlerContext], HandlerOutcome]] = {
    WebhookTopic.ORDERS_CREATE: handle_order_created,
    WebhookTopic.ORDERS_PAID: handle_order_paid,
    WebhookTopic.ORDERS_FULFILLED: handle_order_fulfilled,
    WebhookTopic.FULFILLMENTS_CREATE: handle_fulfillment_updated,
    WebhookTopic.FULFILLMENTS_UPDATE: handle_fulfillment_updated,
    WebhookTopic.PRODUCTS_UPDATE: handle_product_updated,
    WebhookTopic.PRODUCTS_DELETE: handle_product_deleted,
}
