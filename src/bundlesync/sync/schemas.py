"""Pydantic schemas for bundles, sync records, and sync reports.

Defines all structured types for the bundle sync lifecycle:
- Enums: ApprovalStatus, SyncStatus, SyncTrigger, OperationKind,
  PendingOperationStatus, ReconcileResolution, CatalogOutcome
- Bundles: BundleComponent, ServiceItem, BundleCreate, BundleRead
- Sync state: SyncRecordRead, TransitionLogEntry, PendingOperationRead
- Reports: CatalogSyncItem, CatalogSyncReport
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


# ── Enums ───────────────────────────────────────────────────────────────────


class ApprovalStatus(str, Enum):
    """Review state of a bundle, owned by the trainer/reviewer workflow."""

    DRAFT = "draft"
    PENDING_REVIEW = "pending_review"
    PUBLISHED = "published"
    REJECTED = "rejected"


class SyncStatus(str, Enum):
    """External sync status of a bundle's SyncRecord."""

    DRAFT = "draft"
    PENDING_PUSH = "pending_push"
    SYNCED = "synced"
    CONFLICT = "conflict"
    FAILED = "failed"


class SyncTrigger(str, Enum):
    """Why a transition was requested. Legality is checked per trigger."""

    APPROVAL = "approval"
    REPUBLISH = "republish"
    MANUAL_RETRY = "manual_retry"
    RECONCILE_PUSH = "reconcile_push"
    RECONCILE_PULL = "reconcile_pull"
    PUBLISH_SUCCEEDED = "publish_succeeded"
    PUBLISH_FAILED = "publish_failed"
    EXTERNAL_EDIT = "external_edit"
    COMPONENT_DELETED = "component_deleted"
    EXTERNAL_DELETED = "external_deleted"
    CATALOG_DRIFT = "catalog_drift"
    CATALOG_MISSING = "catalog_missing"


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class PendingOperationStatus(str, Enum):
    SUBMITTED = "submitted"
    POLLING = "polling"
    FINALIZING = "finalizing"
    INTERRUPTED = "interrupted"
    # Create was sent but its response was lost; no operation id is known
    UNCONFIRMED = "unconfirmed"


class ReconcileResolution(str, Enum):
    """Direction a human chose to resolve a conflict."""

    PUSH_WINS = "push_wins"
    PULL_WINS = "pull_wins"


class CatalogOutcome(str, Enum):
    IN_SYNC = "in_sync"
    DRIFTED = "drifted"
    MISSING = "missing"
    ERROR = "error"


# ── Bundles ─────────────────────────────────────────────────────────────────


class BundleComponent(BaseModel):
    """A product on the commerce platform included in a bundle."""

    external_product_id: str
    name: str = ""
    quantity: int = Field(default=1, ge=1)


class ServiceItem(BaseModel):
    """A trainer service (sessions, check-ins) included in a bundle."""

    name: str
    sessions: int | None = None
    description: str | None = None


class BundleCreate(BaseModel):
    trainer_id: str
    title: str
    description: str | None = None
    price: Decimal = Field(ge=0)
    image_url: str | None = None
    components: list[BundleComponent] = Field(default_factory=list)
    services: list[ServiceItem] = Field(default_factory=list)


class BundleRead(BaseModel):
    id: str
    trainer_id: str
    title: str
    description: str | None = None
    price: Decimal
    image_url: str | None = None
    components: list[BundleComponent] = Field(default_factory=list)
    services: list[ServiceItem] = Field(default_factory=list)
    approval_status: ApprovalStatus = ApprovalStatus.DRAFT
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def references_product(self, external_product_id: str) -> bool:
        """True if any component points at the given platform product."""
        return any(c.external_product_id == external_product_id for c in self.components)


# ── Sync State ──────────────────────────────────────────────────────────────


class SyncRecordRead(BaseModel):
    """Snapshot of a bundle's SyncRecord at a given version."""

    id: str
    bundle_id: str
    external_id: str | None = None
    external_handle: str | None = None
    status: SyncStatus = SyncStatus.DRAFT
    version: int = 1
    last_synced_at: datetime | None = None
    last_error: str | None = None
    last_pushed_version: int | None = None
    last_pushed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class TransitionLogEntry(BaseModel):
    bundle_id: str
    from_status: SyncStatus
    to_status: SyncStatus
    trigger: SyncTrigger
    version: int
    detail: str | None = None
    created_at: datetime | None = None


class PendingOperationRead(BaseModel):
    id: str
    bundle_id: str
    operation_id: str | None = None
    kind: OperationKind
    status: PendingOperationStatus
    attempts: int = 0
    external_id: str | None = None
    next_poll_at: datetime | None = None
    started_at: datetime | None = None


# ── Reports ─────────────────────────────────────────────────────────────────


class CatalogSyncItem(BaseModel):
    """Outcome of comparing one synced bundle against the platform."""

    bundle_id: str
    external_id: str | None = None
    outcome: CatalogOutcome
    differences: list[str] = Field(default_factory=list)
    error: str | None = None
    status: SyncStatus


class CatalogSyncReport(BaseModel):
    """Per-bundle results of a catalog-wide batch diff."""

    checked: int = 0
    in_sync: int = 0
    drifted: int = 0
    missing: int = 0
    errors: int = 0
    items: list[CatalogSyncItem] = Field(default_factory=list)
