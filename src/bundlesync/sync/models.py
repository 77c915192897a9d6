"""Bundle sync persistence models.

Four SQLAlchemy models on the shared declarative Base:
- BundleModel: trainer-authored composite offering (the local truth)
- SyncRecordModel: one row per bundle holding external sync status and the
  optimistic-concurrency version
- SyncTransitionLogModel: append-only audit of every accepted transition
- PendingOperationModel: in-flight asynchronous create/update on the platform

Ids are string UUIDs and JSON columns use the generic JSON type so the same
models run on PostgreSQL and on the in-memory SQLite used by the tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from src.bundlesync.core.database import Base, UTCDateTime, utcnow


def _uuid() -> str:
    return str(uuid.uuid4())


class BundleModel(Base):
    """Composite offering of product components and service line items.

    Components are an ordered JSON list of
    ``{"external_product_id", "name", "quantity"}`` dicts; services are an
    ordered JSON list of ``{"name", "sessions", "description"}`` dicts.
    """

    __tablename__ = "bundles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    trainer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    image_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    components: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    services: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    approval_status: Mapped[str] = mapped_column(String(32), default="draft", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), onupdate=utcnow, nullable=True
    )


class SyncRecordModel(Base):
    """Persisted external sync state for exactly one bundle.

    ``version`` is bumped by every transition and checked by the
    compare-and-set update in SyncRepository, so concurrent triggers for the
    same bundle cannot both win. ``last_pushed_version``/``last_pushed_at``
    are the marker of our own last push used to recognise webhook echoes.
    """

    __tablename__ = "sync_records"
    __table_args__ = (UniqueConstraint("bundle_id", name="uq_sync_record_bundle"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    bundle_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    external_handle: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="draft", nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_pushed_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_pushed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), onupdate=utcnow, nullable=True
    )


class SyncTransitionLogModel(Base):
    """One row per accepted SyncRecord transition."""

    __tablename__ = "sync_transition_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    bundle_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    from_status: Mapped[str] = mapped_column(String(32), nullable=False)
    to_status: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger: Mapped[str] = mapped_column(String(64), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now()
    )


class PendingOperationModel(Base):
    """An asynchronous platform operation that has not resolved yet.

    At most one per bundle. Deleted once the operation reaches a terminal
    result; left behind with status ``interrupted`` when polling was cut
    short so the next push resumes it instead of submitting again. A create
    whose response was lost is kept as ``unconfirmed`` with no operation id.
    """

    __tablename__ = "pending_operations"
    __table_args__ = (UniqueConstraint("bundle_id", name="uq_pending_operation_bundle"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    bundle_id: Mapped[str] = mapped_column(String(36), nullable=False)
    operation_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    next_poll_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    started_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, server_default=func.now()
    )
