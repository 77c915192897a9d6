"""Commerce platform abstract base class.

Every platform backend implements this ABC. The publisher and orchestrator
only talk to the platform through it, so tests run against an in-memory
implementation.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from src.bundlesync.commerce.schemas import (
    ExternalProduct,
    OperationHandle,
    OperationResult,
    PushPayload,
)


class CommercePlatform(ABC):
    """Abstract interface for the external commerce platform.

    Methods:
        create_composite: Submit an asynchronous composite-offering create.
        update_composite: Submit an asynchronous update of a known product.
        get_operation: Poll an operation's status.
        finalize_composite: Attach price, description, handle and metadata.
        get_product: Read a product (raises CommerceNotFoundError if gone).
        find_product_by_handle: Look a product up by its deterministic handle.
        find_created_composite: Find a product left by a create whose response
            was lost. The create input carries no handle, so this matches on
            title and creation time.
    """

    @abstractmethod
    async def create_composite(self, payload: PushPayload) -> OperationHandle:
        """Start creating a composite offering. Not idempotent."""
        ...

    @abstractmethod
    async def update_composite(self, external_id: str, payload: PushPayload) -> OperationHandle:
        """Start updating the composite offering with the given id."""
        ...

    @abstractmethod
    async def get_operation(self, operation_id: str) -> OperationResult:
        ...

    @abstractmethod
    async def finalize_composite(self, external_id: str, payload: PushPayload) -> None:
        ...

    @abstractmethod
    async def get_product(self, external_id: str) -> ExternalProduct:
        ...

    @abstractmethod
    async def find_product_by_handle(self, handle: str) -> ExternalProduct | None:
        ...

    @abstractmethod
    async def find_created_composite(
        self, payload: PushPayload, since: datetime
    ) -> ExternalProduct | None:
        """Newest product titled like ``payload`` created at or after ``since``."""
        ...
