"""Webhook event repository -- unique-key admission and processing marks."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.bundlesync.webhooks.models import WebhookEventModel


class WebhookEventRead(BaseModel):
    id: str
    dedupe_key: str
    topic: str
    external_resource_id: str | None = None
    received_at: datetime | None = None
    processed_at: datetime | None = None
    error: str | None = None


def _model_to_event(model: WebhookEventModel) -> WebhookEventRead:
    return WebhookEventRead(
        id=model.id,
        dedupe_key=model.dedupe_key,
        topic=model.topic,
        external_resource_id=model.external_resource_id,
        received_at=model.received_at,
        processed_at=model.processed_at,
        error=model.error,
    )


class WebhookEventRepository:
    """Async persistence for WebhookEvent rows.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    async def admit(
        self,
        dedupe_key: str,
        topic: str,
        external_resource_id: str | None,
    ) -> WebhookEventRead | None:
        """Insert an event row; return None if the dedupe key was already taken.

        Relies on the database unique constraint, not on a read-then-write
        check, so concurrent deliveries of the same event admit exactly one.
        """
        async for session in self._session_factory():
            model = WebhookEventModel(
                dedupe_key=dedupe_key,
                topic=topic,
                external_resource_id=external_resource_id,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return None
            return _model_to_event(model)

    async def mark_processed(self, event_id: str) -> None:
        await self._set_result(event_id, processed_at=datetime.now(timezone.utc), error=None)

    async def mark_failed(self, event_id: str, error: str) -> None:
        """Record a processing error; processed_at stays NULL."""
        await self._set_result(event_id, processed_at=None, error=error[:2000])

    async def _set_result(
        self, event_id: str, *, processed_at: datetime | None, error: str | None
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(WebhookEventModel)
                .where(WebhookEventModel.id == event_id)
                .values(processed_at=processed_at, error=error)
            )
            await session.commit()

    async def get_by_dedupe_key(self, dedupe_key: str) -> WebhookEventRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(WebhookEventModel).where(WebhookEventModel.dedupe_key == dedupe_key)
            )
            model = result.scalar_one_or_none()
            return _model_to_event(model) if model else None

    async def count(self) -> int:
        async for session in self._session_factory():
            result = await session.execute(select(func.count()).select_from(WebhookEventModel))
            return int(result.scalar_one())
