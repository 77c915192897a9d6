"""Pydantic types exchanged with commerce platform adapters."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class OperationState(str, Enum):
    """Status of an asynchronous composite-offering operation."""

    CREATED = "CREATED"
    ACTIVE = "ACTIVE"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationState.COMPLETE, OperationState.FAILED)


class PushComponent(BaseModel):
    external_product_id: str
    quantity: int = 1
    name: str = ""


class PushPayload(BaseModel):
    """Everything the platform needs to represent one bundle."""

    bundle_id: str
    handle: str
    title: str
    description_html: str = ""
    price: Decimal
    trainer_id: str
    image_url: str | None = None
    components: list[PushComponent] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)


class OperationHandle(BaseModel):
    """Returned by a create/update submission."""

    operation_id: str
    state: OperationState = OperationState.CREATED


class OperationResult(BaseModel):
    """One observation of an operation's status."""

    operation_id: str
    state: OperationState
    product_id: str | None = None
    error: str | None = None


class ExternalProduct(BaseModel):
    """Platform-side view of a product, used for markers and reconciliation.

    ``version`` is only set by platforms that expose a monotonic revision;
    otherwise ``updated_at`` is the marker. ``components`` is None when the
    platform holds no component metadata for the product.
    """

    id: str
    handle: str | None = None
    title: str
    price: Decimal | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int | None = None
    components: list[PushComponent] | None = None
