"""Bundle sync repository -- async persistence for bundles and sync state.

Provides SyncRepository with the session_factory callable pattern. Owns the
only write path for SyncRecord status: compare_and_set() issues a single
``UPDATE ... WHERE version = :expected AND status = :expected`` and raises
StaleSyncRecordError when no row matched, so two concurrent triggers for the
same bundle can never both succeed. Every accepted transition writes a
SyncTransitionLogModel row in the same transaction.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.bundlesync.sync.errors import BundleNotFoundError, StaleSyncRecordError
from src.bundlesync.sync.models import (
    BundleModel,
    PendingOperationModel,
    SyncRecordModel,
    SyncTransitionLogModel,
)
from src.bundlesync.sync.schemas import (
    ApprovalStatus,
    BundleComponent,
    BundleCreate,
    BundleRead,
    OperationKind,
    PendingOperationRead,
    PendingOperationStatus,
    ServiceItem,
    SyncRecordRead,
    SyncStatus,
    SyncTrigger,
    TransitionLogEntry,
)

logger = structlog.get_logger(__name__)

# Columns a transition may set alongside status and version.
_TRANSITION_FIELDS = frozenset({
    "external_id",
    "external_handle",
    "last_synced_at",
    "last_error",
    "last_pushed_version",
    "last_pushed_at",
})


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_bundle(model: BundleModel) -> BundleRead:
    """Convert BundleModel to BundleRead schema."""
    return BundleRead(
        id=model.id,
        trainer_id=model.trainer_id,
        title=model.title,
        description=model.description,
        price=model.price,
        image_url=model.image_url,
        components=[BundleComponent.model_validate(c) for c in (model.components or [])],
        services=[ServiceItem.model_validate(s) for s in (model.services or [])],
        approval_status=ApprovalStatus(model.approval_status),
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_sync_record(model: SyncRecordModel) -> SyncRecordRead:
    """Convert SyncRecordModel to SyncRecordRead schema."""
    return SyncRecordRead(
        id=model.id,
        bundle_id=model.bundle_id,
        external_id=model.external_id,
        external_handle=model.external_handle,
        status=SyncStatus(model.status),
        version=model.version,
        last_synced_at=model.last_synced_at,
        last_error=model.last_error,
        last_pushed_version=model.last_pushed_version,
        last_pushed_at=model.last_pushed_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_pending_operation(model: PendingOperationModel) -> PendingOperationRead:
    return PendingOperationRead(
        id=model.id,
        bundle_id=model.bundle_id,
        operation_id=model.operation_id,
        kind=OperationKind(model.kind),
        status=PendingOperationStatus(model.status),
        attempts=model.attempts,
        external_id=model.external_id,
        next_poll_at=model.next_poll_at,
        started_at=model.started_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class SyncRepository:
    """Async persistence for bundles, sync records, and pending operations.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self,
        session_factory: Callable[..., AsyncGenerator[AsyncSession, None]],
    ) -> None:
        self._session_factory = session_factory

    # ── Bundles ─────────────────────────────────────────────────────────

    async def create_bundle(self, data: BundleCreate) -> BundleRead:
        """Insert a new bundle in draft approval status."""
        async for session in self._session_factory():
            model = BundleModel(
                trainer_id=data.trainer_id,
                title=data.title,
                description=data.description,
                price=data.price,
                image_url=data.image_url,
                components=[c.model_dump(mode="json") for c in data.components],
                services=[s.model_dump(mode="json") for s in data.services],
                approval_status=ApprovalStatus.DRAFT.value,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_bundle(model)

    async def get_bundle(self, bundle_id: str) -> BundleRead | None:
        async for session in self._session_factory():
            model = await session.get(BundleModel, bundle_id)
            return _model_to_bundle(model) if model else None

    async def list_bundles(self, bundle_ids: list[str] | None = None) -> list[BundleRead]:
        async for session in self._session_factory():
            stmt = select(BundleModel)
            if bundle_ids is not None:
                stmt = stmt.where(BundleModel.id.in_(bundle_ids))
            result = await session.execute(stmt)
            return [_model_to_bundle(m) for m in result.scalars().all()]

    async def set_approval_status(self, bundle_id: str, status: ApprovalStatus) -> BundleRead:
        async for session in self._session_factory():
            model = await session.get(BundleModel, bundle_id)
            if model is None:
                raise BundleNotFoundError(bundle_id)
            model.approval_status = status.value
            await session.commit()
            await session.refresh(model)
            return _model_to_bundle(model)

    async def apply_external_state(
        self,
        bundle_id: str,
        *,
        title: str,
        price: Any,
        components: list[BundleComponent] | None = None,
    ) -> BundleRead:
        """Rewrite the local bundle to match what the platform holds (pull)."""
        async for session in self._session_factory():
            model = await session.get(BundleModel, bundle_id)
            if model is None:
                raise BundleNotFoundError(bundle_id)
            model.title = title
            model.price = price
            if components is not None:
                model.components = [c.model_dump(mode="json") for c in components]
            await session.commit()
            await session.refresh(model)
            return _model_to_bundle(model)

    # ── Sync Records ────────────────────────────────────────────────────

    async def create_sync_record(self, bundle_id: str) -> SyncRecordRead:
        """Create the draft SyncRecord for a bundle, or return the existing one.

        The unique constraint on bundle_id keeps it to one record per bundle
        even when two submissions race.
        """
        async for session in self._session_factory():
            session.add(SyncRecordModel(bundle_id=bundle_id, status=SyncStatus.DRAFT.value))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.info("sync.record_exists", bundle_id=bundle_id)
            result = await session.execute(
                select(SyncRecordModel).where(SyncRecordModel.bundle_id == bundle_id)
            )
            return _model_to_sync_record(result.scalar_one())

    async def get_sync_record(self, bundle_id: str) -> SyncRecordRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncRecordModel).where(SyncRecordModel.bundle_id == bundle_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_sync_record(model) if model else None

    async def list_sync_records(
        self, status: SyncStatus | None = None
    ) -> list[SyncRecordRead]:
        async for session in self._session_factory():
            stmt = select(SyncRecordModel).order_by(SyncRecordModel.created_at)
            if status is not None:
                stmt = stmt.where(SyncRecordModel.status == status.value)
            result = await session.execute(stmt)
            return [_model_to_sync_record(m) for m in result.scalars().all()]

    async def find_records_for_products(
        self, external_ids: set[str]
    ) -> list[tuple[SyncRecordRead, BundleRead]]:
        """Find every sync record whose bundle is, or includes, one of the products.

        ``external_ids`` holds every form of the product id the platform sent
        (numeric and global id). Component lists live in JSON, so the
        component match is done here rather than in SQL.
        """
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncRecordModel, BundleModel).join(
                    BundleModel, BundleModel.id == SyncRecordModel.bundle_id
                )
            )
            matches: list[tuple[SyncRecordRead, BundleRead]] = []
            for record_model, bundle_model in result.all():
                record = _model_to_sync_record(record_model)
                bundle = _model_to_bundle(bundle_model)
                if record.external_id in external_ids or any(
                    bundle.references_product(pid) for pid in external_ids
                ):
                    matches.append((record, bundle))
            return matches

    async def find_bundle_ids_by_external_ids(self, external_ids: set[str]) -> dict[str, str]:
        """Map platform product id to local bundle id for published bundles."""
        if not external_ids:
            return {}
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncRecordModel.external_id, SyncRecordModel.bundle_id).where(
                    SyncRecordModel.external_id.in_(sorted(external_ids))
                )
            )
            return {ext: bid for ext, bid in result.all()}

    async def compare_and_set(
        self,
        bundle_id: str,
        *,
        expected_version: int,
        expected_status: SyncStatus,
        new_status: SyncStatus,
        trigger: SyncTrigger,
        detail: str | None = None,
        **fields: Any,
    ) -> SyncRecordRead:
        """Atomically move a SyncRecord to a new status if nobody else has.

        Args:
            bundle_id: Bundle whose record is being changed.
            expected_version: Version the caller read; the update is a no-op otherwise.
            expected_status: Status the caller read.
            new_status: Target status (legality is checked by the orchestrator).
            trigger: Why; written to the transition log.
            detail: Free-text note for the transition log.
            **fields: Extra columns to set (external_id, last_error, markers).

        Returns:
            The record as of the new version.

        Raises:
            StaleSyncRecordError: If version or status no longer match.
        """
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Cannot set {sorted(unknown)} through a transition")

        async for session in self._session_factory():
            result = await session.execute(
                update(SyncRecordModel)
                .where(
                    SyncRecordModel.bundle_id == bundle_id,
                    SyncRecordModel.version == expected_version,
                    SyncRecordModel.status == expected_status.value,
                )
                .values(
                    status=new_status.value,
                    version=expected_version + 1,
                    updated_at=datetime.now(timezone.utc),
                    **fields,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise StaleSyncRecordError(bundle_id, expected_version)

            session.add(
                SyncTransitionLogModel(
                    bundle_id=bundle_id,
                    from_status=expected_status.value,
                    to_status=new_status.value,
                    trigger=trigger.value,
                    version=expected_version + 1,
                    detail=detail,
                )
            )
            await session.commit()

            row = await session.execute(
                select(SyncRecordModel).where(SyncRecordModel.bundle_id == bundle_id)
            )
            return _model_to_sync_record(row.scalar_one())

    async def list_transitions(self, bundle_id: str, limit: int = 20) -> list[TransitionLogEntry]:
        """Most recent transitions for a bundle, newest first."""
        async for session in self._session_factory():
            result = await session.execute(
                select(SyncTransitionLogModel)
                .where(SyncTransitionLogModel.bundle_id == bundle_id)
                .order_by(SyncTransitionLogModel.version.desc())
                .limit(limit)
            )
            return [
                TransitionLogEntry(
                    bundle_id=m.bundle_id,
                    from_status=SyncStatus(m.from_status),
                    to_status=SyncStatus(m.to_status),
                    trigger=SyncTrigger(m.trigger),
                    version=m.version,
                    detail=m.detail,
                    created_at=m.created_at,
                )
                for m in result.scalars().all()
            ]

    # ── Pending Operations ──────────────────────────────────────────────

    async def get_pending_operation(self, bundle_id: str) -> PendingOperationRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(PendingOperationModel).where(PendingOperationModel.bundle_id == bundle_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_pending_operation(model) if model else None

    async def save_pending_operation(
        self,
        bundle_id: str,
        *,
        operation_id: str | None,
        kind: OperationKind,
        status: PendingOperationStatus,
        attempts: int = 0,
        external_id: str | None = None,
        next_poll_at: datetime | None = None,
        started_at: datetime | None = None,
    ) -> PendingOperationRead:
        """Insert or update the single pending operation for a bundle.

        ``started_at`` is only written when given; otherwise an insert takes
        the current time and an update keeps the original.
        """
        async for session in self._session_factory():
            result = await session.execute(
                select(PendingOperationModel).where(PendingOperationModel.bundle_id == bundle_id)
            )
            model = result.scalar_one_or_none()
            if model is None:
                model = PendingOperationModel(bundle_id=bundle_id)
                session.add(model)
            model.operation_id = operation_id
            model.kind = kind.value
            model.status = status.value
            model.attempts = attempts
            model.external_id = external_id
            model.next_poll_at = next_poll_at
            if started_at is not None:
                model.started_at = started_at
            await session.commit()
            await session.refresh(model)
            return _model_to_pending_operation(model)

    async def delete_pending_operation(self, bundle_id: str) -> None:
        async for session in self._session_factory():
            await session.execute(
                delete(PendingOperationModel).where(PendingOperationModel.bundle_id == bundle_id)
            )
            await session.commit()
