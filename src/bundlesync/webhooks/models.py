"""Webhook event ledger.

The unique constraint on ``dedupe_key`` is what makes ingestion idempotent:
a redelivered event fails the insert and is acknowledged without being
processed again.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from src.bundlesync.core.database import Base, UTCDateTime, utcnow


class WebhookEventModel(Base):
    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("dedupe_key", name="uq_webhook_event_dedupe_key"),)

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    dedupe_key: Mapped[str] = mapped_column(String(512), nullable=False)
    topic: Mapped[str] = mapped_column(String(64), nullable=False)
    external_resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    received_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now()
    )
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
