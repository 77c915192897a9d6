"""Operator endpoints for bundle sync status, manual sync and reconciliation.

All endpoints require a manager or reviewer bearer token. Sync status only
changes through the orchestrator; these endpoints never write a SyncRecord
directly.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from src.bundlesync.api.deps import Operator, get_current_operator
from src.bundlesync.commerce.errors import CommerceError
from src.bundlesync.config import get_settings
from src.bundlesync.sync.errors import (
    BundleNotFoundError,
    IllegalTransitionError,
    PlatformNotConfiguredError,
    StaleSyncRecordError,
    SyncError,
    SyncInProgressError,
    SyncRecordNotFoundError,
)
from src.bundlesync.sync.orchestrator import SyncOrchestrator
from src.bundlesync.sync.repository import SyncRepository
from src.bundlesync.sync.schemas import (
    CatalogSyncReport,
    ReconcileResolution,
    SyncRecordRead,
    TransitionLogEntry,
)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


# ── Response Schemas ─────────────────────────────────────────────────────────


class SyncRecordResponse(BaseModel):
    """Sync status of one bundle, serializes datetimes to ISO strings."""

    bundle_id: str
    status: str
    version: int
    external_id: str | None = None
    external_handle: str | None = None
    last_synced_at: str | None = None
    last_error: str | None = None
    last_pushed_version: int | None = None
    last_pushed_at: str | None = None


class TransitionResponse(BaseModel):
    from_status: str
    to_status: str
    trigger: str
    version: int
    detail: str | None = None
    created_at: str | None = None


class SyncStatusResponse(BaseModel):
    record: SyncRecordResponse
    transitions: list[TransitionResponse] = Field(default_factory=list)


class ManualSyncResponse(BaseModel):
    record: SyncRecordResponse
    in_progress: bool


# ── Request Schemas ──────────────────────────────────────────────────────────


class ManualSyncRequest(BaseModel):
    """Request body for a manual sync; wait_seconds is capped by settings."""

    wait_seconds: float = Field(default=0.0, ge=0)


class ReconcileRequest(BaseModel):
    resolution: ReconcileResolution


# ── Dependency Injection Helpers ─────────────────────────────────────────────


def _get_orchestrator(request: Request) -> SyncOrchestrator:
    """Retrieve SyncOrchestrator from app.state, 503 if not available."""
    orchestrator = getattr(request.app.state, "sync_orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync orchestrator not initialized",
        )
    return orchestrator


def _get_sync_repository(request: Request) -> SyncRepository:
    """Retrieve SyncRepository from app.state, 503 if not available."""
    repo = getattr(request.app.state, "sync_repository", None)
    if repo is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync repository not initialized",
        )
    return repo


# ── Conversion Helpers ───────────────────────────────────────────────────────


def _record_to_response(record: SyncRecordRead) -> SyncRecordResponse:
    return SyncRecordResponse(
        bundle_id=record.bundle_id,
        status=record.status.value,
        version=record.version,
        external_id=record.external_id,
        external_handle=record.external_handle,
        last_synced_at=record.last_synced_at.isoformat() if record.last_synced_at else None,
        last_error=record.last_error,
        last_pushed_version=record.last_pushed_version,
        last_pushed_at=record.last_pushed_at.isoformat() if record.last_pushed_at else None,
    )


def _transition_to_response(entry: TransitionLogEntry) -> TransitionResponse:
    return TransitionResponse(
        from_status=entry.from_status.value,
        to_status=entry.to_status.value,
        trigger=entry.trigger.value,
        version=entry.version,
        detail=entry.detail,
        created_at=entry.created_at.isoformat() if entry.created_at else None,
    )


def sync_error_to_http(exc: Exception) -> HTTPException:
    """Map sync and commerce exceptions onto HTTP errors."""
    if isinstance(exc, (SyncRecordNotFoundError, BundleNotFoundError)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PlatformNotConfiguredError):
        return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    if isinstance(exc, (IllegalTransitionError, SyncInProgressError, StaleSyncRecordError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, CommerceError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/bundles/{bundle_id}", response_model=SyncStatusResponse)
async def get_sync_status(
    bundle_id: str,
    request: Request,
    operator: Operator = Depends(get_current_operator),
) -> SyncStatusResponse:
    """Current SyncRecord plus the most recent transitions."""
    repo = _get_sync_repository(request)
    record = await repo.get_sync_record(bundle_id)
    if record is None:
        raise sync_error_to_http(SyncRecordNotFoundError(bundle_id))
    transitions = await repo.list_transitions(bundle_id)
    return SyncStatusResponse(
        record=_record_to_response(record),
        transitions=[_transition_to_response(t) for t in transitions],
    )


@router.post("/bundles/{bundle_id}", response_model=ManualSyncResponse)
async def manual_sync(
    bundle_id: str,
    request: Request,
    body: ManualSyncRequest | None = None,
    operator: Operator = Depends(get_current_operator),
) -> Any:
    """Push a bundle now and optionally wait for it.

    Returns 200 with the final record when the push finishes within
    ``wait_seconds``, or 202 with ``in_progress`` set when it is still
    running.
    """
    orchestrator = _get_orchestrator(request)
    body = body or ManualSyncRequest()
    wait = min(body.wait_seconds, get_settings().MANUAL_SYNC_MAX_WAIT_SECONDS)
    try:
        result = await orchestrator.manual_sync(bundle_id, wait_seconds=wait)
    except (SyncError, CommerceError) as exc:
        raise sync_error_to_http(exc)

    response = ManualSyncResponse(
        record=_record_to_response(result.record),
        in_progress=result.in_progress,
    )
    if result.in_progress:
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content=response.model_dump())
    return response


@router.post("/bundles/{bundle_id}/retry", response_model=SyncRecordResponse)
async def retry_sync(
    bundle_id: str,
    request: Request,
    operator: Operator = Depends(get_current_operator),
) -> SyncRecordResponse:
    """failed -> pending_push."""
    orchestrator = _get_orchestrator(request)
    try:
        record = await orchestrator.retry(bundle_id)
    except (SyncError, CommerceError) as exc:
        raise sync_error_to_http(exc)
    return _record_to_response(record)


@router.post("/bundles/{bundle_id}/reconcile", response_model=SyncRecordResponse)
async def reconcile_conflict(
    bundle_id: str,
    body: ReconcileRequest,
    request: Request,
    operator: Operator = Depends(get_current_operator),
) -> SyncRecordResponse:
    """Resolve a conflict: push_wins re-publishes local truth, pull_wins accepts the platform's."""
    orchestrator = _get_orchestrator(request)
    try:
        record = await orchestrator.reconcile(bundle_id, body.resolution)
    except (SyncError, CommerceError) as exc:
        raise sync_error_to_http(exc)
    return _record_to_response(record)


@router.post("/catalog", response_model=CatalogSyncReport)
async def sync_catalog(
    request: Request,
    operator: Operator = Depends(get_current_operator),
) -> CatalogSyncReport:
    """Diff every synced bundle against the platform and report per bundle."""
    orchestrator = _get_orchestrator(request)
    return await orchestrator.sync_catalog()
