"""Order and entitlement persistence models.

- OrderModel: local mirror of a platform order, keyed by the platform order id
- EntitlementModel: a customer's activated access to a purchased bundle,
  unique per (order, bundle) so redelivered paid events grant once
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Numeric, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.bundlesync.core.database import Base, UTCDateTime, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class OrderModel(Base):
    __tablename__ = "orders"
    __table_args__ = (UniqueConstraint("external_order_id", name="uq_order_external_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    external_order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    trainer_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bundle_ids: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    line_items: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    total_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(8), nullable=True)
    payment_status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    fulfillment_status: Mapped[str] = mapped_column(
        String(32), default="unfulfilled", nullable=False
    )
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)
    tracking_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    tracking_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    carrier: Mapped[str | None] = mapped_column(String(255), nullable=True)
    estimated_delivery: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), onupdate=utcnow, nullable=True
    )


class EntitlementModel(Base):
    __tablename__ = "entitlements"
    __table_args__ = (
        UniqueConstraint("order_id", "bundle_id", name="uq_entitlement_order_bundle"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    order_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    bundle_id: Mapped[str] = mapped_column(String(36), nullable=False)
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="active", nullable=False)
    activated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now()
    )
