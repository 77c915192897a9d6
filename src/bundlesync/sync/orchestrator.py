"""Sync orchestrator -- the only path that changes a bundle's sync status.

Every status change goes through SyncOrchestrator.transition(), which checks
the state machine and then performs a compare-and-set on the SyncRecord
version. Pushes run on the SyncTaskPool; the caller gets the pending_push
record immediately and may await the task for a bounded time.

Operations:
- approve_bundle: draft -> pending_push, then publish
- manual_sync: start a push from draft/synced/failed, optionally awaiting it
- retry: failed -> pending_push
- reconcile: resolve a conflict push-wins or pull-wins
- sync_catalog: diff every synced bundle against the platform
- resume_interrupted: restart pushes left in pending_push by a previous process
- apply_event_transition: guarded transition requested by a webhook handler
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import structlog
from pydantic import BaseModel

from src.bundlesync.commerce.adapter import CommercePlatform
from src.bundlesync.commerce.errors import CommerceError, CommerceNotFoundError
from src.bundlesync.core.monitoring import catalog_sync_outcomes_total, sync_transitions_total
from src.bundlesync.sync.errors import (
    BundleNotFoundError,
    IllegalTransitionError,
    PlatformNotConfiguredError,
    StaleSyncRecordError,
    SyncError,
    SyncInProgressError,
    SyncRecordNotFoundError,
)
from src.bundlesync.sync.payload import bundle_handle, build_push_payload, diff_external
from src.bundlesync.sync.publisher import CompositeOfferingPublisher, PublishResult
from src.bundlesync.sync.repository import SyncRepository
from src.bundlesync.sync.schemas import (
    BundleComponent,
    CatalogOutcome,
    CatalogSyncItem,
    CatalogSyncReport,
    ReconcileResolution,
    SyncRecordRead,
    SyncStatus,
    SyncTrigger,
)
from src.bundlesync.sync.state_machine import (
    EVENT_TRIGGERS,
    PUSH_TRIGGER_FOR_STATUS,
    check_transition,
)
from src.bundlesync.sync.worker import SyncTaskPool

logger = structlog.get_logger(__name__)


class TransitionRequest(BaseModel):
    """A transition an event handler wants, pinned to the version it saw."""

    bundle_id: str
    expected_version: int
    to_status: SyncStatus
    trigger: SyncTrigger
    detail: str | None = None


class ManualSyncResult(BaseModel):
    record: SyncRecordRead
    in_progress: bool


class SyncOrchestrator:
    """Coordinates pushes, pulls and guarded status transitions per bundle.

    Args:
        repository: SyncRecord/bundle store.
        platform: Commerce platform adapter (None if not configured).
        publisher: Composite-offering publisher.
        pool: Background task pool for publish runs.
    """

    def __init__(
        self,
        repository: SyncRepository,
        platform: CommercePlatform | None,
        publisher: CompositeOfferingPublisher | None,
        pool: SyncTaskPool,
    ) -> None:
        self._repository = repository
        self._platform = platform
        self._publisher = publisher
        self._pool = pool
        self._push_tasks: dict[str, asyncio.Task] = {}

    # ── Guarded Transition ──────────────────────────────────────────────

    async def transition(
        self,
        bundle_id: str,
        to_status: SyncStatus,
        trigger: SyncTrigger,
        *,
        expected_version: int | None = None,
        detail: str | None = None,
        **fields: Any,
    ) -> SyncRecordRead:
        """Apply one legal transition with an optimistic version check.

        Args:
            bundle_id: Bundle whose SyncRecord changes.
            to_status: Target status.
            trigger: Reason; must be allowed for (current, target).
            expected_version: Version the caller based its decision on. When
                omitted, the version just read is used.
            detail: Note for the transition log.
            **fields: Extra SyncRecord columns to set.

        Raises:
            SyncRecordNotFoundError: No record for the bundle.
            StaleSyncRecordError: The record moved past expected_version.
            IllegalTransitionError: Not an edge of the state machine.
        """
        record = await self._repository.get_sync_record(bundle_id)
        if record is None:
            raise SyncRecordNotFoundError(bundle_id)
        if expected_version is not None and record.version != expected_version:
            raise StaleSyncRecordError(bundle_id, expected_version)

        check_transition(record.status, to_status, trigger)

        updated = await self._repository.compare_and_set(
            bundle_id,
            expected_version=record.version,
            expected_status=record.status,
            new_status=to_status,
            trigger=trigger,
            detail=detail,
            **fields,
        )
        sync_transitions_total.labels(
            from_status=record.status.value,
            to_status=to_status.value,
            trigger=trigger.value,
        ).inc()
        logger.info(
            "sync.transition",
            bundle_id=bundle_id,
            from_status=record.status.value,
            to_status=to_status.value,
            trigger=trigger.value,
            version=updated.version,
        )
        return updated

    # ── Push ────────────────────────────────────────────────────────────

    async def _start_push(self, record: SyncRecordRead, trigger: SyncTrigger) -> SyncRecordRead:
        """Move a record to pending_push and schedule the publish run."""
        if record.status == SyncStatus.PENDING_PUSH:
            raise SyncInProgressError(record.bundle_id)
        if self._publisher is None:
            raise PlatformNotConfiguredError()

        bundle = await self._repository.get_bundle(record.bundle_id)
        if bundle is None:
            raise BundleNotFoundError(record.bundle_id)

        try:
            pending = await self.transition(
                record.bundle_id,
                SyncStatus.PENDING_PUSH,
                trigger,
                expected_version=record.version,
                external_handle=bundle_handle(bundle.id),
            )
        except StaleSyncRecordError:
            current = await self._repository.get_sync_record(record.bundle_id)
            if current is not None and current.status == SyncStatus.PENDING_PUSH:
                raise SyncInProgressError(record.bundle_id)
            raise

        self._schedule_push(pending)
        return pending

    def _schedule_push(self, record: SyncRecordRead) -> asyncio.Task:
        task = self._pool.submit(
            self._run_push(record.bundle_id, record.version),
            name=f"push:{record.bundle_id}",
        )
        self._push_tasks[record.bundle_id] = task
        task.add_done_callback(lambda t, bid=record.bundle_id: self._forget_task(bid, t))
        return task

    def _forget_task(self, bundle_id: str, task: asyncio.Task) -> None:
        if self._push_tasks.get(bundle_id) is task:
            del self._push_tasks[bundle_id]

    async def _run_push(self, bundle_id: str, version: int) -> SyncRecordRead:
        """Publish a bundle and record the outcome. Runs on the task pool."""
        bundle = await self._repository.get_bundle(bundle_id)
        record = await self._repository.get_sync_record(bundle_id)
        if bundle is None or record is None:
            raise BundleNotFoundError(bundle_id)

        payload = build_push_payload(bundle)
        try:
            result = await self._publisher.publish(payload, external_id=record.external_id)
        except asyncio.CancelledError:
            await self._record_cancelled(bundle_id, version)
            raise
        except Exception as exc:
            logger.error("sync.push_crashed", bundle_id=bundle_id, exc_info=True)
            return await self._record_crashed(bundle_id, version, exc)
        return await self.apply_publish_result(bundle_id, version, result)

    async def _record_crashed(self, bundle_id: str, version: int, exc: Exception) -> SyncRecordRead:
        """Leave pending_push for failed so an operator retry can run again."""
        try:
            return await self.transition(
                bundle_id,
                SyncStatus.FAILED,
                SyncTrigger.PUBLISH_FAILED,
                expected_version=version,
                detail="transient",
                last_error=f"transient: {type(exc).__name__}: {exc}",
            )
        except SyncError:
            logger.warning("sync.crash_record_failed", bundle_id=bundle_id, exc_info=True)
            raise exc

    async def _record_cancelled(self, bundle_id: str, version: int) -> None:
        try:
            await self.transition(
                bundle_id,
                SyncStatus.FAILED,
                SyncTrigger.PUBLISH_FAILED,
                expected_version=version,
                detail="interrupted by shutdown",
                last_error="cancelled: interrupted by shutdown; retry resumes the pending operation",
            )
        except SyncError:
            logger.warning("sync.cancel_record_failed", bundle_id=bundle_id, exc_info=True)

    async def apply_publish_result(
        self, bundle_id: str, version: int, result: PublishResult
    ) -> SyncRecordRead:
        """Record a publisher outcome as pending_push -> synced or -> failed."""
        if result.succeeded:
            now = datetime.now(timezone.utc)
            return await self.transition(
                bundle_id,
                SyncStatus.SYNCED,
                SyncTrigger.PUBLISH_SUCCEEDED,
                expected_version=version,
                detail=f"published after {result.polls} polls",
                external_id=result.external_id,
                last_synced_at=now,
                last_error=None,
                last_pushed_version=result.marker_version,
                last_pushed_at=result.marker_at or now,
            )

        fields: dict[str, Any] = {"last_error": result.error_summary()}
        if result.external_id:
            fields["external_id"] = result.external_id
        return await self.transition(
            bundle_id,
            SyncStatus.FAILED,
            SyncTrigger.PUBLISH_FAILED,
            expected_version=version,
            detail=result.outcome.value,
            **fields,
        )

    async def approve_bundle(self, bundle_id: str) -> SyncRecordRead:
        """draft -> pending_push after reviewer approval, then publish."""
        record = await self._require_record(bundle_id)
        return await self._start_push(record, SyncTrigger.APPROVAL)

    async def retry(self, bundle_id: str) -> SyncRecordRead:
        """failed -> pending_push on operator request."""
        record = await self._require_record(bundle_id)
        if record.status != SyncStatus.FAILED:
            raise IllegalTransitionError(
                record.status.value, SyncStatus.PENDING_PUSH.value, SyncTrigger.MANUAL_RETRY.value
            )
        return await self._start_push(record, SyncTrigger.MANUAL_RETRY)

    async def manual_sync(self, bundle_id: str, wait_seconds: float = 0.0) -> ManualSyncResult:
        """Start a push and wait up to ``wait_seconds`` for it to finish.

        Returns the final record if the push finished in time, otherwise the
        pending_push record with ``in_progress`` set.

        Raises:
            SyncInProgressError: A push is already pending.
            IllegalTransitionError: The record is in conflict (use reconcile).
        """
        record = await self._require_record(bundle_id)
        if record.status == SyncStatus.PENDING_PUSH:
            raise SyncInProgressError(bundle_id)
        trigger = PUSH_TRIGGER_FOR_STATUS.get(record.status)
        if trigger is None:
            raise IllegalTransitionError(
                record.status.value, SyncStatus.PENDING_PUSH.value, "manual_sync"
            )

        pending = await self._start_push(record, trigger)
        task = self._push_tasks.get(bundle_id)
        if task is None or wait_seconds <= 0:
            return ManualSyncResult(record=pending, in_progress=True)

        try:
            final = await asyncio.wait_for(asyncio.shield(task), timeout=wait_seconds)
        except asyncio.TimeoutError:
            current = await self._repository.get_sync_record(bundle_id)
            return ManualSyncResult(record=current or pending, in_progress=True)
        return ManualSyncResult(record=final, in_progress=False)

    # ── Reconcile ───────────────────────────────────────────────────────

    async def reconcile(
        self, bundle_id: str, resolution: ReconcileResolution
    ) -> SyncRecordRead:
        """Resolve a conflict toward local truth (push) or external truth (pull)."""
        record = await self._require_record(bundle_id)
        if resolution == ReconcileResolution.PUSH_WINS:
            if record.status != SyncStatus.CONFLICT:
                raise IllegalTransitionError(
                    record.status.value,
                    SyncStatus.PENDING_PUSH.value,
                    SyncTrigger.RECONCILE_PUSH.value,
                )
            return await self._start_push(record, SyncTrigger.RECONCILE_PUSH)
        return await self._reconcile_pull(record)

    async def _reconcile_pull(self, record: SyncRecordRead) -> SyncRecordRead:
        check_transition(record.status, SyncStatus.SYNCED, SyncTrigger.RECONCILE_PULL)
        if self._platform is None:
            raise PlatformNotConfiguredError()
        if record.external_id is None:
            raise SyncError(f"Bundle {record.bundle_id} has no external product to pull")

        product = await self._platform.get_product(record.external_id)
        components = None
        if product.components is not None:
            components = [
                BundleComponent(
                    external_product_id=c.external_product_id,
                    name=c.name,
                    quantity=c.quantity,
                )
                for c in product.components
            ]
        bundle = await self._repository.get_bundle(record.bundle_id)
        if bundle is None:
            raise BundleNotFoundError(record.bundle_id)

        await self._repository.apply_external_state(
            record.bundle_id,
            title=product.title,
            price=product.price if product.price is not None else bundle.price,
            components=components,
        )
        now = datetime.now(timezone.utc)
        return await self.transition(
            record.bundle_id,
            SyncStatus.SYNCED,
            SyncTrigger.RECONCILE_PULL,
            expected_version=record.version,
            detail="accepted external state",
            last_synced_at=now,
            last_error=None,
            last_pushed_version=product.version,
            last_pushed_at=product.updated_at or now,
        )

    # ── Events ──────────────────────────────────────────────────────────

    async def apply_event_transition(self, request: TransitionRequest) -> SyncRecordRead | None:
        """Apply a webhook-requested transition; lost races are logged, not raised."""
        if request.trigger not in EVENT_TRIGGERS:
            raise ValueError(f"Trigger {request.trigger.value} cannot come from an event")
        try:
            return await self.transition(
                request.bundle_id,
                request.to_status,
                request.trigger,
                expected_version=request.expected_version,
                detail=request.detail,
                last_error=request.detail,
            )
        except (StaleSyncRecordError, IllegalTransitionError) as exc:
            logger.info(
                "sync.event_transition_skipped",
                bundle_id=request.bundle_id,
                to_status=request.to_status.value,
                trigger=request.trigger.value,
                reason=str(exc),
            )
            return None

    # ── Catalog ─────────────────────────────────────────────────────────

    async def sync_catalog(self) -> CatalogSyncReport:
        """Diff every synced bundle against the platform; never aborts the batch."""
        report = CatalogSyncReport()
        for record in await self._repository.list_sync_records(SyncStatus.SYNCED):
            item = await self._check_catalog_item(record)
            report.items.append(item)
            catalog_sync_outcomes_total.labels(item.outcome.value).inc()
            report.checked += 1
            if item.outcome == CatalogOutcome.IN_SYNC:
                report.in_sync += 1
            elif item.outcome == CatalogOutcome.DRIFTED:
                report.drifted += 1
            elif item.outcome == CatalogOutcome.MISSING:
                report.missing += 1
            else:
                report.errors += 1
        logger.info(
            "sync.catalog_done",
            checked=report.checked,
            drifted=report.drifted,
            missing=report.missing,
            errors=report.errors,
        )
        return report

    async def _check_catalog_item(self, record: SyncRecordRead) -> CatalogSyncItem:
        item = CatalogSyncItem(
            bundle_id=record.bundle_id,
            external_id=record.external_id,
            outcome=CatalogOutcome.ERROR,
            status=record.status,
        )
        try:
            if self._platform is None:
                raise PlatformNotConfiguredError()
            bundle = await self._repository.get_bundle(record.bundle_id)
            if bundle is None:
                raise BundleNotFoundError(record.bundle_id)
            if record.external_id is None:
                raise SyncError("Synced record has no external id")

            try:
                product = await self._platform.get_product(record.external_id)
            except CommerceNotFoundError:
                updated = await self.transition(
                    record.bundle_id,
                    SyncStatus.FAILED,
                    SyncTrigger.CATALOG_MISSING,
                    expected_version=record.version,
                    detail="external product missing",
                    last_error="external product missing; re-publish required",
                )
                item.outcome = CatalogOutcome.MISSING
                item.status = updated.status
                return item

            item.differences = diff_external(bundle, product)
            if not item.differences:
                item.outcome = CatalogOutcome.IN_SYNC
                return item

            detail = "drift: " + ", ".join(item.differences)
            updated = await self.transition(
                record.bundle_id,
                SyncStatus.CONFLICT,
                SyncTrigger.CATALOG_DRIFT,
                expected_version=record.version,
                detail=detail,
                last_error=detail,
            )
            item.outcome = CatalogOutcome.DRIFTED
            item.status = updated.status
        except (CommerceError, SyncError) as exc:
            logger.warning("sync.catalog_item_error", bundle_id=record.bundle_id, error=str(exc))
            item.outcome = CatalogOutcome.ERROR
            item.error = str(exc)
        return item

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def resume_interrupted(self) -> int:
        """Reschedule pushes a previous process left in pending_push."""
        if self._publisher is None:
            return 0
        records = await self._repository.list_sync_records(SyncStatus.PENDING_PUSH)
        for record in records:
            if record.bundle_id not in self._push_tasks:
                self._schedule_push(record)
        if records:
            logger.info("sync.resumed_pending_pushes", count=len(records))
        return len(records)

    async def _require_record(self, bundle_id: str) -> SyncRecordRead:
        record = await self._repository.get_sync_record(bundle_id)
        if record is None:
            raise SyncRecordNotFoundError(bundle_id)
        return record
