"""Shared fixtures for the bundle sync test suite.

Provides:
- A file-backed SQLite database (aiosqlite) per test, with all tables created
- session_factory bound to it, and the three repositories built on it
- FakeCommercePlatform: in-memory CommercePlatform with scriptable operations
- FakeClock: instant sleep plus a monotonic clock that advances by each sleep
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

import src.bundlesync.orders.models  # noqa: F401
import src.bundlesync.sync.models  # noqa: F401
import src.bundlesync.webhooks.models  # noqa: F401
from src.bundlesync.commerce.adapter import CommercePlatform
from src.bundlesync.commerce.errors import (
    CommerceNotFoundError,
    CommerceRejectedError,
    TransientCommerceError,
)
from src.bundlesync.commerce.schemas import (
    ExternalProduct,
    OperationHandle,
    OperationResult,
    OperationState,
    PushPayload,
)
from src.bundlesync.core.database import Base
from src.bundlesync.orders.repository import OrderRepository
from src.bundlesync.sync.orchestrator import SyncOrchestrator
from src.bundlesync.sync.publisher import CompositeOfferingPublisher
from src.bundlesync.sync.repository import SyncRepository
from src.bundlesync.sync.schemas import BundleComponent, BundleCreate, ServiceItem
from src.bundlesync.sync.worker import SyncTaskPool
from src.bundlesync.webhooks.repository import WebhookEventRepository


# ── Test Doubles ─────────────────────────────────────────────────────────────


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is awaited."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCommercePlatform(CommercePlatform):
    """In-memory commerce platform.

    Operations report ACTIVE until they have been polled ``complete_after``
    times, then COMPLETE. Every completion bumps the product's version.
    """

    def __init__(self) -> None:
        self.products: dict[str, ExternalProduct] = {}
        self.complete_after = 1
        self.never_complete = False
        self.fail_operation: str | None = None
        self.reject_submit: str | None = None
        self.lose_create_response = False
        self.fail_finalize: Exception | None = None
        self.unreadable: set[str] = set()
        self.created: list[PushPayload] = []
        self.updated: list[tuple[str, PushPayload]] = []
        self.finalized: list[str] = []
        self.poll_count = 0
        self._operations: dict[str, dict] = {}
        self._counter = 0

    # Helpers for tests

    def add_product(self, product_id: str, title: str, price: str = "10.00", **extra) -> ExternalProduct:
        product = ExternalProduct(
            id=product_id,
            title=title,
            price=Decimal(price),
            updated_at=datetime.now(timezone.utc),
            version=extra.pop("version", 1),
            **extra,
        )
        self.products[product_id] = product
        return product

    def edit_product(self, product_id: str, **changes) -> ExternalProduct:
        product = self.products[product_id]
        changes.setdefault("version", (product.version or 0) + 1)
        changes.setdefault("updated_at", datetime.now(timezone.utc) + timedelta(minutes=5))
        self.products[product_id] = product.model_copy(update=changes)
        return self.products[product_id]

    # CommercePlatform

    async def create_composite(self, payload: PushPayload) -> OperationHandle:
        if self.reject_submit:
            raise CommerceRejectedError(self.reject_submit)
        self.created.append(payload)
        handle = self._start(None, payload)
        if self.lose_create_response:
            # The platform made the product; the caller never hears about it.
            product_id = self._operations[handle.operation_id]["product_id"]
            self.products[product_id] = ExternalProduct(
                id=product_id,
                title=payload.title,
                price=payload.price,
                created_at=datetime.now(timezone.utc),
                version=1,
            )
            raise TransientCommerceError("read timed out")
        return handle

    async def update_composite(self, external_id: str, payload: PushPayload) -> OperationHandle:
        if self.reject_submit:
            raise CommerceRejectedError(self.reject_submit)
        self.updated.append((external_id, payload))
        return self._start(external_id, payload)

    def _start(self, external_id: str | None, payload: PushPayload) -> OperationHandle:
        self._counter += 1
        operation_id = f"gid://shopify/ProductBundleOperation/{self._counter}"
        self._operations[operation_id] = {
            "product_id": external_id or f"gid://shopify/Product/{1000 + self._counter}",
            "payload": payload,
            "polls": 0,
        }
        return OperationHandle(operation_id=operation_id)

    async def get_operation(self, operation_id: str) -> OperationResult:
        operation = self._operations.get(operation_id)
        if operation is None:
            raise CommerceNotFoundError(operation_id)
        operation["polls"] += 1
        self.poll_count += 1

        if self.fail_operation:
            return OperationResult(
                operation_id=operation_id,
                state=OperationState.FAILED,
                error=self.fail_operation,
            )
        if self.never_complete or operation["polls"] < self.complete_after:
            return OperationResult(operation_id=operation_id, state=OperationState.ACTIVE)

        payload: PushPayload = operation["payload"]
        product_id = operation["product_id"]
        previous = self.products.get(product_id)
        self.products[product_id] = ExternalProduct(
            id=product_id,
            handle=previous.handle if previous else None,
            title=payload.title,
            price=payload.price,
            created_at=previous.created_at if previous else datetime.now(timezone.utc),
            updated_at=datetime.now(timezone.utc),
            version=(previous.version or 0) + 1 if previous else 1,
            components=previous.components if previous else None,
        )
        return OperationResult(
            operation_id=operation_id,
            state=OperationState.COMPLETE,
            product_id=product_id,
        )

    async def finalize_composite(self, external_id: str, payload: PushPayload) -> None:
        if self.fail_finalize is not None:
            raise self.fail_finalize
        if external_id not in self.products:
            raise CommerceNotFoundError(external_id)
        self.products[external_id] = self.products[external_id].model_copy(
            update={
                "handle": payload.handle,
                "price": payload.price,
                "components": list(payload.components),
            }
        )
        self.finalized.append(external_id)

    async def get_product(self, external_id: str) -> ExternalProduct:
        if external_id in self.unreadable:
            raise TransientCommerceError(f"read of {external_id} timed out")
        if external_id not in self.products:
            raise CommerceNotFoundError(external_id)
        return self.products[external_id]

    async def find_product_by_handle(self, handle: str) -> ExternalProduct | None:
        for product in self.products.values():
            if product.handle == handle:
                return product
        return None

    async def find_created_composite(self, payload: PushPayload, since: datetime) -> ExternalProduct | None:
        candidates = [
            product
            for product in self.products.values()
            if product.title == payload.title
            and product.created_at is not None
            and product.created_at >= since
            and product.handle in (None, payload.handle)
        ]
        return max(candidates, key=lambda product: product.created_at, default=None)


# ── Factories ────────────────────────────────────────────────────────────────


def make_bundle_create(**overrides) -> BundleCreate:
    defaults = {
        "trainer_id": "trainer-1",
        "title": "Strength Starter Pack",
        "description": "Everything to start lifting",
        "price": Decimal("149.00"),
        "components": [
            BundleComponent(external_product_id="gid://shopify/Product/501", name="Resistance Bands", quantity=2),
            BundleComponent(external_product_id="gid://shopify/Product/502", name="Protein Tub", quantity=1),
        ],
        "services": [ServiceItem(name="1:1 coaching", sessions=4)],
    }
    defaults.update(overrides)
    return BundleCreate(**defaults)


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path):
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bundlesync.db'}")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


@pytest.fixture
def sync_repo(session_factory) -> SyncRepository:
    return SyncRepository(session_factory=session_factory)


@pytest.fixture
def order_repo(session_factory) -> OrderRepository:
    return OrderRepository(session_factory=session_factory)


@pytest.fixture
def webhook_repo(session_factory) -> WebhookEventRepository:
    return WebhookEventRepository(session_factory=session_factory)


@pytest.fixture
def platform() -> FakeCommercePlatform:
    return FakeCommercePlatform()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bundle_factory(sync_repo):
    """Create a bundle and its draft SyncRecord."""

    async def _create(**overrides):
        bundle = await sync_repo.create_bundle(make_bundle_create(**overrides))
        record = await sync_repo.create_sync_record(bundle.id)
        return bundle, record

    return _create


@pytest.fixture
def publisher(platform, sync_repo, clock) -> CompositeOfferingPublisher:
    return CompositeOfferingPublisher(platform, sync_repo, sleep=clock.sleep, clock=clock)


@pytest_asyncio.fixture
async def pool():
    task_pool = SyncTaskPool(concurrency=4)
    yield task_pool
    await task_pool.drain()
    await task_pool.shutdown()


@pytest.fixture
def orchestrator(sync_repo, platform, publisher, pool) -> SyncOrchestrator:
    return SyncOrchestrator(sync_repo, platform, publisher, pool)


@pytest.fixture
def synced_bundle(bundle_factory, orchestrator, pool, sync_repo):
    """Create a bundle and publish it through the orchestrator to ``synced``."""

    async def _create(**overrides):
        bundle, _ = await bundle_factory(**overrides)
        await orchestrator.approve_bundle(bundle.id)
        await pool.drain()
        return bundle, await sync_repo.get_sync_record(bundle.id)

    return _create
