"""Order repository -- async persistence for orders and entitlements.

Order creation and entitlement grants are keyed on unique constraints
(external_order_id; order_id + bundle_id), so replaying the same platform
event can never produce a second row.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from enum import Enum

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.bundlesync.orders.models import EntitlementModel, OrderModel
from src.bundlesync.orders.schemas import (
    EntitlementRead,
    FulfillmentStatus,
    OrderCreate,
    OrderRead,
    OrderStatus,
    OrderUpdate,
    PaymentStatus,
)

logger = structlog.get_logger(__name__)


def _model_to_order(model: OrderModel) -> OrderRead:
    """Convert OrderModel to OrderRead schema."""
    return OrderRead(
        id=model.id,
        external_order_id=model.external_order_id,
        order_number=model.order_number,
        customer_email=model.customer_email,
        customer_name=model.customer_name,
        trainer_id=model.trainer_id,
        bundle_ids=model.bundle_ids or [],
        line_items=model.line_items or [],
        total_amount=model.total_amount,
        currency=model.currency,
        payment_status=PaymentStatus(model.payment_status),
        fulfillment_status=FulfillmentStatus(model.fulfillment_status),
        status=OrderStatus(model.status),
        tracking_number=model.tracking_number,
        tracking_url=model.tracking_url,
        carrier=model.carrier,
        estimated_delivery=model.estimated_delivery,
        delivered_at=model.delivered_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_entitlement(model: EntitlementModel) -> EntitlementRead:
    return EntitlementRead(
        id=model.id,
        order_id=model.order_id,
        bundle_id=model.bundle_id,
        customer_email=model.customer_email,
        status=model.status,
        activated_at=model.activated_at,
    )


class OrderRepository:
    """Async CRUD for orders and entitlements.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    async def get_by_external_id(self, external_order_id: str) -> OrderRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(OrderModel).where(OrderModel.external_order_id == external_order_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_order(model) if model else None

    async def create_order(self, data: OrderCreate) -> OrderRead:
        """Insert an order, or return the existing one for the same platform id."""
        async for session in self._session_factory():
            values = data.model_dump(mode="json")
            values["total_amount"] = data.total_amount
            session.add(OrderModel(**values))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("orders.already_exists", external_order_id=data.external_order_id)
            result = await session.execute(
                select(OrderModel).where(OrderModel.external_order_id == data.external_order_id)
            )
            return _model_to_order(result.scalar_one())

    async def update_order(self, external_order_id: str, data: OrderUpdate) -> OrderRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(OrderModel).where(OrderModel.external_order_id == external_order_id)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            for key, value in data.model_dump(exclude_none=True).items():
                setattr(model, key, value.value if isinstance(value, Enum) else value)
            await session.commit()
            await session.refresh(model)
            return _model_to_order(model)

    async def grant_entitlements(
        self,
        order_id: str,
        bundle_ids: list[str],
        customer_email: str | None,
    ) -> list[EntitlementRead]:
        """Activate one entitlement per bundle; already-granted ones are kept as is."""
        granted: list[EntitlementRead] = []
        async for session in self._session_factory():
            for bundle_id in bundle_ids:
                model = EntitlementModel(
                    order_id=order_id,
                    bundle_id=bundle_id,
                    customer_email=customer_email,
                )
                session.add(model)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    continue
                granted.append(_model_to_entitlement(model))
            if granted:
                logger.info("orders.entitlements_granted", order_id=order_id, count=len(granted))
            return granted

    async def list_entitlements(self, order_id: str) -> list[EntitlementRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(EntitlementModel).where(EntitlementModel.order_id == order_id)
            )
            return [_model_to_entitlement(m) for m in result.scalars().all()]
