"""Bundle authoring and review endpoints.

A minimal surface to drive the sync engine: create a draft bundle, submit it
for review (which creates its SyncRecord), and record the review decision.
Approval hands the bundle to the orchestrator for publishing.
"""

from __future__ import annotations

from enum import Enum

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from src.bundlesync.api.deps import Operator, get_current_operator
from src.bundlesync.api.v1.sync import (
    SyncRecordResponse,
    _get_orchestrator,
    _get_sync_repository,
    _record_to_response,
    sync_error_to_http,
)
from src.bundlesync.commerce.errors import CommerceError
from src.bundlesync.sync.errors import BundleNotFoundError, SyncError
from src.bundlesync.sync.schemas import (
    ApprovalStatus,
    BundleComponent,
    BundleCreate,
    BundleRead,
    ServiceItem,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/bundles", tags=["bundles"])


# ── Schemas ──────────────────────────────────────────────────────────────────


class BundleResponse(BaseModel):
    """Bundle with its sync status, if it has been submitted."""

    id: str
    trainer_id: str
    title: str
    description: str | None = None
    price: str
    image_url: str | None = None
    components: list[BundleComponent]
    services: list[ServiceItem]
    approval_status: str
    sync: SyncRecordResponse | None = None


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class ReviewRequest(BaseModel):
    decision: ReviewDecision
    note: str | None = None


def _bundle_to_response(bundle: BundleRead, sync: SyncRecordResponse | None = None) -> BundleResponse:
    return BundleResponse(
        id=bundle.id,
        trainer_id=bundle.trainer_id,
        title=bundle.title,
        description=bundle.description,
        price=str(bundle.price),
        image_url=bundle.image_url,
        components=bundle.components,
        services=bundle.services,
        approval_status=bundle.approval_status.value,
        sync=sync,
    )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", response_model=BundleResponse, status_code=201)
async def create_bundle(
    body: BundleCreate,
    request: Request,
    operator: Operator = Depends(get_current_operator),
) -> BundleResponse:
    """Create a draft bundle."""
    repo = _get_sync_repository(request)
    bundle = await repo.create_bundle(body)
    logger.info("bundles.created", bundle_id=bundle.id, trainer_id=bundle.trainer_id)
    return _bundle_to_response(bundle)


@router.get("/{bundle_id}", response_model=BundleResponse)
async def get_bundle(
    bundle_id: str,
    request: Request,
    operator: Operator = Depends(get_current_operator),
) -> BundleResponse:
    repo = _get_sync_repository(request)
    bundle = await repo.get_bundle(bundle_id)
    if bundle is None:
        raise sync_error_to_http(BundleNotFoundError(bundle_id))
    record = await repo.get_sync_record(bundle_id)
    return _bundle_to_response(bundle, _record_to_response(record) if record else None)


@router.post("/{bundle_id}/submit", response_model=BundleResponse)
async def submit_for_review(
    bundle_id: str,
    request: Request,
    operator: Operator = Depends(get_current_operator),
) -> BundleResponse:
    """draft/rejected -> pending_review; creates the draft SyncRecord once."""
    repo = _get_sync_repository(request)
    bundle = await repo.get_bundle(bundle_id)
    if bundle is None:
        raise sync_error_to_http(BundleNotFoundError(bundle_id))
    if bundle.approval_status not in (ApprovalStatus.DRAFT, ApprovalStatus.REJECTED):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Bundle is {bundle.approval_status.value}; only draft or rejected bundles can be submitted",
        )

    bundle = await repo.set_approval_status(bundle_id, ApprovalStatus.PENDING_REVIEW)
    record = await repo.create_sync_record(bundle_id)
    return _bundle_to_response(bundle, _record_to_response(record))


@router.post("/{bundle_id}/review", response_model=BundleResponse)
async def review_bundle(
    bundle_id: str,
    body: ReviewRequest,
    request: Request,
    operator: Operator = Depends(get_current_operator),
) -> BundleResponse:
    """Record a review decision. Approval publishes the bundle."""
    repo = _get_sync_repository(request)
    bundle = await repo.get_bundle(bundle_id)
    if bundle is None:
        raise sync_error_to_http(BundleNotFoundError(bundle_id))
    if bundle.approval_status != ApprovalStatus.PENDING_REVIEW:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Bundle is {bundle.approval_status.value}, not pending review",
        )

    if body.decision == ReviewDecision.REJECT:
        bundle = await repo.set_approval_status(bundle_id, ApprovalStatus.REJECTED)
        logger.info("bundles.rejected", bundle_id=bundle_id, reviewer=operator.id, note=body.note)
        record = await repo.get_sync_record(bundle_id)
        return _bundle_to_response(bundle, _record_to_response(record) if record else None)

    orchestrator = _get_orchestrator(request)
    try:
        record = await orchestrator.approve_bundle(bundle_id)
    except (SyncError, CommerceError) as exc:
        raise sync_error_to_http(exc)
    bundle = await repo.set_approval_status(bundle_id, ApprovalStatus.PUBLISHED)
    logger.info("bundles.approved", bundle_id=bundle_id, reviewer=operator.id)
    return _bundle_to_response(bundle, _record_to_response(record))
