"""Composite-offering publisher -- submit, poll, finalize as an explicit FSM.

The platform creates composite offerings asynchronously, so a push is a small
state machine driven one step at a time:

    SUBMIT -> POLL (repeated) -> FINALIZE -> DONE

Any step can also end in DONE early: a rejected or lost submit, a failed or
timed-out operation, or a finalize that fails after the product exists.

Polling backs off exponentially (initial interval doubling up to a cap) and is
bounded by a total wait. The in-flight operation is persisted as a
PendingOperation so that a timeout or a shutdown leaves something the next
push can resume instead of submitting a duplicate create.

The create mutation carries no handle, so a create whose response was lost
is recorded as ``unconfirmed`` with the time it was sent. Before creating
again the publisher looks for a product with the same title created since
then and adopts it. Only after ``confirm_window`` passes with no match is
the create submitted again.

Sleep and clock are injectable so tests can drive the schedule without
waiting.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, Field

from src.bundlesync.commerce.adapter import CommercePlatform
from src.bundlesync.commerce.errors import (
    CommerceConnectError,
    CommerceError,
    CommerceNotFoundError,
    CommerceRejectedError,
    TransientCommerceError,
)
from src.bundlesync.commerce.schemas import OperationState, PushPayload
from src.bundlesync.core.monitoring import publish_duration_seconds
from src.bundlesync.sync.repository import SyncRepository
from src.bundlesync.sync.schemas import OperationKind, PendingOperationStatus

logger = structlog.get_logger(__name__)

# Platform and worker clocks can disagree about when a product was created
_CREATED_AT_SKEW = timedelta(minutes=2)


class PublishPhase(str, Enum):
    SUBMIT = "submit"
    POLL = "poll"
    FINALIZE = "finalize"
    DONE = "done"


class PublishOutcome(str, Enum):
    """How a publish ended. Everything but SUCCEEDED maps to ``failed``."""

    SUCCEEDED = "succeeded"
    REJECTED = "rejected"
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    PARTIAL = "partial"


class PublishResult(BaseModel):
    """Terminal result of one publish run, consumed by the orchestrator."""

    outcome: PublishOutcome
    external_id: str | None = None
    marker_version: int | None = None
    marker_at: datetime | None = None
    error: str | None = None
    polls: int = 0
    poll_intervals: list[float] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome == PublishOutcome.SUCCEEDED

    def error_summary(self) -> str | None:
        """``lastError`` text, prefixed with the outcome so operators can tell them apart."""
        if self.succeeded:
            return None
        return f"{self.outcome.value}: {self.error or 'no detail'}"


@dataclass
class _PublishRun:
    """Mutable state carried between FSM steps."""

    payload: PushPayload
    external_id: str | None
    operation_id: str | None = None
    kind: OperationKind = OperationKind.CREATE
    deadline: float | None = None
    next_interval: float = 0.0
    polls: int = 0
    intervals: list[float] = field(default_factory=list)
    unconfirmed_since: datetime | None = None
    result: PublishResult | None = None

    def finish(self, outcome: PublishOutcome, error: str | None = None, **extra) -> PublishPhase:
        self.result = PublishResult(
            outcome=outcome,
            external_id=extra.pop("external_id", self.external_id),
            error=error,
            polls=self.polls,
            poll_intervals=list(self.intervals),
            **extra,
        )
        return PublishPhase.DONE


class CompositeOfferingPublisher:
    """Drives one composite-offering create/update to a terminal result.

    Args:
        platform: Commerce platform adapter.
        repository: Store for the bundle's PendingOperation.
        initial_interval: First poll interval in seconds.
        max_interval: Backoff cap in seconds.
        max_wait: Hard bound on total polling time in seconds.
        sleep: Awaitable sleep (defaults to asyncio.sleep).
        clock: Monotonic clock in seconds (defaults to time.monotonic).
        confirm_window: Seconds an unconfirmed create blocks a new create
            while the publisher waits for the product to appear.
    """

    def __init__(
        self,
        platform: CommercePlatform,
        repository: SyncRepository,
        *,
        initial_interval: float = 1.0,
        max_interval: float = 8.0,
        max_wait: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
        confirm_window: float = 300.0,
    ) -> None:
        self._platform = platform
        self._repository = repository
        self._initial_interval = initial_interval
        self._max_interval = max_interval
        self._max_wait = max_wait
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._confirm_window = timedelta(seconds=confirm_window)

    async def publish(self, payload: PushPayload, external_id: str | None = None) -> PublishResult:
        """Run the FSM until DONE.

        Resumes a persisted PendingOperation for the bundle when one exists.
        Cancellation marks the operation interrupted and re-raises.

        Args:
            payload: What to publish.
            external_id: Known platform id; present means update, absent means create.

        Returns:
            PublishResult with outcome, external id and push marker.
        """
        run = _PublishRun(payload=payload, external_id=external_id)
        phase = await self._resume_phase(run)
        started = self._clock()

        try:
            while phase != PublishPhase.DONE:
                if phase == PublishPhase.SUBMIT:
                    phase = await self._submit(run)
                elif phase == PublishPhase.POLL:
                    phase = await self._poll(run)
                else:
                    phase = await self._finalize(run)
        except asyncio.CancelledError:
            await self._keep_for_resume(run)
            logger.warning(
                "publisher.cancelled",
                bundle_id=payload.bundle_id,
                operation_id=run.operation_id,
            )
            raise

        result = run.result
        publish_duration_seconds.labels(outcome=result.outcome.value).observe(
            self._clock() - started
        )
        logger.info(
            "publisher.done",
            bundle_id=payload.bundle_id,
            outcome=result.outcome.value,
            external_id=result.external_id,
            polls=result.polls,
            error=result.error,
        )
        return result

    # ── FSM Steps ───────────────────────────────────────────────────────

    async def _resume_phase(self, run: _PublishRun) -> PublishPhase:
        pending = await self._repository.get_pending_operation(run.payload.bundle_id)
        if pending is None:
            return PublishPhase.SUBMIT

        run.operation_id = pending.operation_id
        run.kind = pending.kind
        run.external_id = pending.external_id or run.external_id
        logger.info(
            "publisher.resume",
            bundle_id=run.payload.bundle_id,
            operation_id=pending.operation_id,
            status=pending.status.value,
        )
        if pending.status == PendingOperationStatus.UNCONFIRMED or pending.operation_id is None:
            run.unconfirmed_since = pending.started_at or datetime.now(timezone.utc)
            return PublishPhase.SUBMIT
        if pending.status == PendingOperationStatus.FINALIZING and run.external_id:
            return PublishPhase.FINALIZE
        return PublishPhase.POLL

    async def _submit(self, run: _PublishRun) -> PublishPhase:
        payload = run.payload
        try:
            if run.external_id is None:
                existing = await self._platform.find_product_by_handle(payload.handle)
                if existing is not None:
                    logger.info(
                        "publisher.adopted_existing",
                        bundle_id=payload.bundle_id,
                        external_id=existing.id,
                    )
                    run.external_id = existing.id

            if run.external_id is None and run.unconfirmed_since is not None:
                blocked = await self._confirm_earlier_create(run)
                if blocked is not None:
                    return run.finish(PublishOutcome.TRANSIENT, blocked)

            if run.external_id is None:
                run.kind = OperationKind.CREATE
                attempted_at = datetime.now(timezone.utc)
                try:
                    handle = await self._platform.create_composite(payload)
                except CommerceConnectError:
                    raise
                except TransientCommerceError:
                    # Sent, but the reply was lost: the product may exist.
                    await self._save(
                        run, PendingOperationStatus.UNCONFIRMED, started_at=attempted_at
                    )
                    raise
            else:
                run.kind = OperationKind.UPDATE
                handle = await self._platform.update_composite(run.external_id, payload)
        except CommerceRejectedError as exc:
            return run.finish(PublishOutcome.REJECTED, str(exc))
        except CommerceError as exc:
            return run.finish(PublishOutcome.TRANSIENT, str(exc))

        run.operation_id = handle.operation_id
        await self._save(run, PendingOperationStatus.SUBMITTED)
        logger.info(
            "publisher.submitted",
            bundle_id=payload.bundle_id,
            kind=run.kind.value,
            operation_id=handle.operation_id,
        )
        return PublishPhase.POLL

    async def _confirm_earlier_create(self, run: _PublishRun) -> str | None:
        """Adopt the product an unconfirmed create made, if it can be found.

        Returns a reason when a new create must wait, ``None`` when submit
        may go ahead (as an update after adoption, or as a fresh create).
        """
        payload = run.payload
        since = run.unconfirmed_since
        found = await self._platform.find_created_composite(payload, since - _CREATED_AT_SKEW)
        if found is not None:
            logger.info(
                "publisher.adopted_unconfirmed",
                bundle_id=payload.bundle_id,
                external_id=found.id,
            )
            run.external_id = found.id
            return None

        if datetime.now(timezone.utc) - since < self._confirm_window:
            return (
                f"Earlier create sent at {since.isoformat()} is not confirmed yet; "
                "not creating again"
            )

        logger.warning(
            "publisher.unconfirmed_create_abandoned",
            bundle_id=payload.bundle_id,
            sent_at=since.isoformat(),
        )
        await self._repository.delete_pending_operation(payload.bundle_id)
        run.unconfirmed_since = None
        return None

    async def _poll(self, run: _PublishRun) -> PublishPhase:
        if run.deadline is None:
            run.deadline = self._clock() + self._max_wait
            run.next_interval = self._initial_interval

        remaining = run.deadline - self._clock()
        if remaining <= 0:
            return await self._timed_out(run)

        interval = min(run.next_interval, remaining)
        await self._sleep(interval)
        run.intervals.append(interval)
        run.next_interval = min(run.next_interval * 2, self._max_interval)

        run.polls += 1
        try:
            status = await self._platform.get_operation(run.operation_id)
        except CommerceNotFoundError as exc:
            await self._repository.delete_pending_operation(run.payload.bundle_id)
            return run.finish(PublishOutcome.REJECTED, str(exc))
        except CommerceError as exc:
            logger.warning(
                "publisher.poll_error",
                bundle_id=run.payload.bundle_id,
                operation_id=run.operation_id,
                error=str(exc),
            )
            status = None

        logger.debug(
            "publisher.poll",
            bundle_id=run.payload.bundle_id,
            operation_id=run.operation_id,
            attempt=run.polls,
            state=status.state.value if status else None,
        )

        if status is not None and status.state.is_terminal:
            if status.state == OperationState.COMPLETE:
                run.external_id = status.product_id or run.external_id
                return PublishPhase.FINALIZE
            await self._repository.delete_pending_operation(run.payload.bundle_id)
            return run.finish(PublishOutcome.REJECTED, status.error or "Operation failed")

        if self._clock() >= run.deadline:
            return await self._timed_out(run)

        await self._save(
            run,
            PendingOperationStatus.POLLING,
            next_poll_at=datetime.now(timezone.utc) + timedelta(seconds=run.next_interval),
        )
        return PublishPhase.POLL

    async def _timed_out(self, run: _PublishRun) -> PublishPhase:
        await self._keep_for_resume(run)
        return run.finish(
            PublishOutcome.TIMEOUT,
            f"Operation {run.operation_id} did not finish within {self._max_wait:g}s "
            f"({run.polls} polls)",
        )

    async def _finalize(self, run: _PublishRun) -> PublishPhase:
        if not run.external_id:
            await self._repository.delete_pending_operation(run.payload.bundle_id)
            return run.finish(PublishOutcome.REJECTED, "Operation completed without a product id")

        await self._save(run, PendingOperationStatus.FINALIZING)
        try:
            await self._platform.finalize_composite(run.external_id, run.payload)
            product = await self._platform.get_product(run.external_id)
        except CommerceError as exc:
            # The product exists; keeping external_id makes the retry an update.
            await self._repository.delete_pending_operation(run.payload.bundle_id)
            return run.finish(PublishOutcome.PARTIAL, f"finalize failed: {exc}")

        await self._repository.delete_pending_operation(run.payload.bundle_id)
        return run.finish(
            PublishOutcome.SUCCEEDED,
            external_id=product.id,
            marker_version=product.version,
            marker_at=product.updated_at or datetime.now(timezone.utc),
        )

    # ── Persistence ─────────────────────────────────────────────────────

    async def _save(self, run: _PublishRun, status: PendingOperationStatus, **kwargs) -> None:
        await self._repository.save_pending_operation(
            run.payload.bundle_id,
            operation_id=run.operation_id,
            kind=run.kind,
            status=status,
            attempts=run.polls,
            external_id=run.external_id,
            **kwargs,
        )

    async def _keep_for_resume(self, run: _PublishRun) -> None:
        if run.operation_id is None:
            return
        await self._save(run, PendingOperationStatus.INTERRUPTED)
