"""Pydantic schemas for orders and entitlements."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class FulfillmentStatus(str, Enum):
    UNFULFILLED = "unfulfilled"
    PARTIAL = "partial"
    FULFILLED = "fulfilled"
    RESTOCKED = "restocked"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"


class OrderCreate(BaseModel):
    external_order_id: str
    order_number: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    trainer_id: str | None = None
    bundle_ids: list[str] = Field(default_factory=list)
    line_items: list[dict[str, Any]] = Field(default_factory=list)
    total_amount: Decimal | None = None
    currency: str | None = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.UNFULFILLED
    status: OrderStatus = OrderStatus.PENDING


class OrderUpdate(BaseModel):
    """Partial update; only fields that are set are written."""

    payment_status: PaymentStatus | None = None
    fulfillment_status: FulfillmentStatus | None = None
    status: OrderStatus | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    carrier: str | None = None
    estimated_delivery: datetime | None = None
    delivered_at: datetime | None = None


class OrderRead(OrderCreate):
    id: str
    tracking_number: str | None = None
    tracking_url: str | None = None
    carrier: str | None = None
    estimated_delivery: datetime | None = None
    delivered_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EntitlementRead(BaseModel):
    id: str
    order_id: str
    bundle_id: str
    customer_email: str | None = None
    status: str = "active"
    activated_at: datetime | None = None
