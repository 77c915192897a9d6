"""Tests for the Shopify GraphQL adapter using httpx.MockTransport.

Responses are routed by GraphQL operation name. Tenacity waits are patched
to zero so retry tests run instantly.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
from prometheus_client import REGISTRY
from tenacity import wait_none

from src.bundlesync.commerce.errors import (
    CommerceConnectError,
    CommerceNotFoundError,
    CommerceRejectedError,
    TransientCommerceError,
)
from src.bundlesync.commerce.schemas import OperationState, PushComponent, PushPayload
from src.bundlesync.commerce.shopify import ShopifyAdapter, build_commerce_platform, product_gid

ENDPOINT = "https://fit-store.myshopify.com/admin/api/2024-10/graphql.json"

OPTIONS = {"product": {"options": [{"id": "gid://shopify/ProductOption/1", "name": "Title", "optionValues": [{"name": "Default Title"}]}]}}
PRODUCT_NODE = {
    "id": "gid://shopify/Product/9001",
    "handle": "bundle-b-1",
    "title": "Strength Starter Pack",
    "updatedAt": "2026-03-01T12:00:00Z",
    "variants": {"nodes": [{"id": "gid://shopify/ProductVariant/1", "price": "149.00"}]},
    "metafield": {"value": json.dumps([{"external_product_id": "gid://shopify/Product/501", "quantity": 2, "name": "Bands"}])},
}


class MockShopify:
    """Records requests and answers them from a per-operation script."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, dict, httpx.Request]] = []
        self.responses: dict[str, list] = {}

    def on(self, operation: str, *responses) -> None:
        self.responses[operation] = list(responses)

    def calls(self, operation: str) -> list[dict]:
        return [variables for op, variables, _ in self.requests if op == operation]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        operation = re.search(r"(?:query|mutation)\s+(\w+)", body["query"]).group(1)
        self.requests.append((operation, body["variables"], request))
        script = self.responses[operation]
        reply = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json={"data": reply})


@pytest.fixture(autouse=True)
def no_retry_wait(monkeypatch):
    monkeypatch.setattr(ShopifyAdapter._query.retry, "wait", wait_none())
    monkeypatch.setattr(ShopifyAdapter._submit_create.retry, "wait", wait_none())


@pytest.fixture
def shopify():
    return MockShopify()


@pytest.fixture
def adapter(shopify):
    return ShopifyAdapter(
        store_domain="fit-store.myshopify.com",
        access_token="shpat_test",
        transport=httpx.MockTransport(shopify),
    )


def _payload(**overrides) -> PushPayload:
    data = {
        "bundle_id": "b-1",
        "handle": "bundle-b-1",
        "title": "Strength Starter Pack",
        "description_html": "<p>Lift</p>",
        "price": Decimal("149.00"),
        "trainer_id": "trainer-1",
        "components": [PushComponent(external_product_id="501", quantity=2, name="Bands")],
    }
    data.update(overrides)
    return PushPayload(**data)


# ── Composite Offerings ─────────────────────────────────────────────────────


class TestCreateAndUpdate:
    async def test_create_submits_components_with_options(self, adapter, shopify):
        shopify.on("productOptions", OPTIONS)
        shopify.on("productBundleCreate", {"productBundleCreate": {
            "productBundleOperation": {"id": "gid://shopify/ProductBundleOperation/1", "status": "CREATED"},
            "userErrors": [],
        }})

        handle = await adapter.create_composite(_payload())

        assert handle.operation_id == "gid://shopify/ProductBundleOperation/1"
        assert handle.state == OperationState.CREATED
        [variables] = shopify.calls("productBundleCreate")
        [component] = variables["input"]["components"]
        assert component["productId"] == "gid://shopify/Product/501"
        assert component["quantity"] == 2
        assert component["optionSelections"][0]["values"] == ["Default Title"]

        _, _, request = shopify.requests[0]
        assert str(request.url) == ENDPOINT
        assert request.headers["X-Shopify-Access-Token"] == "shpat_test"

    async def test_create_user_errors_are_rejections(self, adapter, shopify):
        shopify.on("productOptions", OPTIONS)
        shopify.on("productBundleCreate", {"productBundleCreate": {
            "productBundleOperation": None,
            "userErrors": [{"field": ["title"], "message": "Title can't be blank"}],
        }})

        with pytest.raises(CommerceRejectedError) as exc_info:
            await adapter.create_composite(_payload())
        assert "Title can't be blank" in str(exc_info.value)
        assert exc_info.value.user_errors[0]["field"] == ["title"]

    async def test_missing_component_is_rejected(self, adapter, shopify):
        shopify.on("productOptions", {"product": None})

        with pytest.raises(CommerceRejectedError):
            await adapter.create_composite(_payload())
        assert shopify.calls("productBundleCreate") == []

    async def test_update_targets_product_gid(self, adapter, shopify):
        shopify.on("productOptions", OPTIONS)
        shopify.on("productBundleUpdate", {"productBundleUpdate": {
            "productBundleOperation": {"id": "gid://shopify/ProductBundleOperation/2", "status": "ACTIVE"},
            "userErrors": [],
        }})

        handle = await adapter.update_composite("9001", _payload())

        assert handle.state == OperationState.ACTIVE
        assert shopify.calls("productBundleUpdate")[0]["input"]["productId"] == "gid://shopify/Product/9001"


class TestGetOperation:
    async def test_complete_with_product(self, adapter, shopify):
        shopify.on("productOperation", {"productOperation": {
            "id": "op-1", "status": "COMPLETE", "product": {"id": "gid://shopify/Product/9001"}, "userErrors": [],
        }})
        result = await adapter.get_operation("op-1")
        assert result.state == OperationState.COMPLETE
        assert result.product_id == "gid://shopify/Product/9001"

    async def test_active(self, adapter, shopify):
        shopify.on("productOperation", {"productOperation": {"id": "op-1", "status": "ACTIVE", "product": None}})
        result = await adapter.get_operation("op-1")
        assert result.state == OperationState.ACTIVE
        assert result.product_id is None

    async def test_complete_with_errors_is_failed(self, adapter, shopify):
        shopify.on("productOperation", {"productOperation": {
            "id": "op-1",
            "status": "COMPLETE",
            "product": None,
            "userErrors": [{"field": None, "message": "Component is archived", "code": "INVALID"}],
        }})
        result = await adapter.get_operation("op-1")
        assert result.state == OperationState.FAILED
        assert result.error == "Component is archived"

    async def test_unknown_operation(self, adapter, shopify):
        shopify.on("productOperation", {"productOperation": None})
        with pytest.raises(CommerceNotFoundError):
            await adapter.get_operation("op-missing")


class TestFinalize:
    async def test_sets_handle_metafields_and_price(self, adapter, shopify):
        shopify.on("product", {"product": PRODUCT_NODE})
        shopify.on("productUpdate", {"productUpdate": {"product": {"id": PRODUCT_NODE["id"]}, "userErrors": []}})
        shopify.on("productVariantsBulkUpdate", {"productVariantsBulkUpdate": {"productVariants": [], "userErrors": []}})

        await adapter.finalize_composite(PRODUCT_NODE["id"], _payload(price=Decimal("139.00")))

        [update] = shopify.calls("productUpdate")
        assert update["input"]["handle"] == "bundle-b-1"
        keys = {m["key"]: m for m in update["input"]["metafields"]}
        assert keys["bundle_id"]["value"] == "b-1"
        assert keys["component_count"]["value"] == "1"
        assert keys["bundle_components"]["namespace"] == "bundle_sync"
        [price] = shopify.calls("productVariantsBulkUpdate")
        assert price["variants"] == [{"id": "gid://shopify/ProductVariant/1", "price": "139.00"}]

    async def test_missing_product(self, adapter, shopify):
        shopify.on("product", {"product": None})
        with pytest.raises(CommerceNotFoundError):
            await adapter.finalize_composite("9001", _payload())


# ── Reads ───────────────────────────────────────────────────────────────────


class TestReads:
    async def test_get_product_parses_node(self, adapter, shopify):
        shopify.on("product", {"product": PRODUCT_NODE})

        product = await adapter.get_product("9001")

        assert product.id == "gid://shopify/Product/9001"
        assert product.price == Decimal("149.00")
        assert product.updated_at.tzinfo is not None
        assert product.version is None
        assert product.components == [
            PushComponent(external_product_id="gid://shopify/Product/501", quantity=2, name="Bands")
        ]
        assert shopify.calls("product")[0]["id"] == "gid://shopify/Product/9001"

    async def test_get_product_without_metafield(self, adapter, shopify):
        shopify.on("product", {"product": {**PRODUCT_NODE, "metafield": None}})
        assert (await adapter.get_product("9001")).components is None

    async def test_get_missing_product(self, adapter, shopify):
        shopify.on("product", {"product": None})
        with pytest.raises(CommerceNotFoundError):
            await adapter.get_product("9001")

    async def test_find_by_handle_requires_exact_match(self, adapter, shopify):
        shopify.on(
            "productByHandle",
            {"products": {"nodes": [{**PRODUCT_NODE, "handle": "bundle-b-10"}]}},
            {"products": {"nodes": [PRODUCT_NODE]}},
        )

        assert await adapter.find_product_by_handle("bundle-b-1") is None
        found = await adapter.find_product_by_handle("bundle-b-1")
        assert found.handle == "bundle-b-1"

    async def test_find_created_composite_searches_title_and_creation_time(self, adapter, shopify):
        fresh = {
            **PRODUCT_NODE,
            "id": "gid://shopify/Product/9100",
            "handle": "strength-starter-pack-1",
            "createdAt": "2026-03-01T12:00:05Z",
            "metafield": None,
        }
        shopify.on("recentProducts", {"products": {"nodes": [fresh]}})

        found = await adapter.find_created_composite(
            _payload(), datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        )

        assert found.id == "gid://shopify/Product/9100"
        assert found.created_at == datetime(2026, 3, 1, 12, 0, 5, tzinfo=timezone.utc)
        [variables] = shopify.calls("recentProducts")
        assert variables["query"] == 'title:"Strength Starter Pack" AND created_at:>=2026-03-01T12:00:00Z'

    async def test_find_created_composite_skips_other_bundles_products(self, adapter, shopify):
        other_bundle = {**PRODUCT_NODE, "handle": "bundle-b-2", "createdAt": "2026-03-01T12:00:09Z"}
        other_title = {**PRODUCT_NODE, "handle": "strength-starter-pack-plus", "title": "Strength Starter Pack Plus", "metafield": None}
        shopify.on("recentProducts", {"products": {"nodes": [other_bundle, other_title]}})

        assert await adapter.find_created_composite(
            _payload(), datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        ) is None


# ── Errors & Retries ────────────────────────────────────────────────────────


class TestErrorsAndRetries:
    async def test_server_errors_are_retried(self, adapter, shopify):
        shopify.on(
            "product",
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json={"data": {"product": PRODUCT_NODE}}),
        )
        product = await adapter.get_product("9001")
        assert product.title == "Strength Starter Pack"
        assert len(shopify.calls("product")) == 3

    async def test_retries_give_up_after_three_attempts(self, adapter, shopify):
        shopify.on("product", httpx.Response(429))
        with pytest.raises(TransientCommerceError):
            await adapter.get_product("9001")
        assert len(shopify.calls("product")) == 3

    async def test_throttled_graphql_error_is_transient(self, adapter, shopify):
        shopify.on(
            "product",
            httpx.Response(200, json={"errors": [{"message": "Throttled", "extensions": {"code": "THROTTLED"}}]}),
            httpx.Response(200, json={"data": {"product": PRODUCT_NODE}}),
        )
        await adapter.get_product("9001")
        assert len(shopify.calls("product")) == 2

    async def test_graphql_error_is_rejected_without_retry(self, adapter, shopify):
        shopify.on("product", httpx.Response(200, json={"errors": [{"message": "Field 'x' doesn't exist"}]}))
        with pytest.raises(CommerceRejectedError):
            await adapter.get_product("9001")
        assert len(shopify.calls("product")) == 1

    async def test_non_json_body_is_transient(self, adapter, shopify):
        shopify.on("productOperation", httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(TransientCommerceError, match="non-JSON"):
            await adapter.get_operation("op-1")
        assert len(shopify.calls("productOperation")) == 3

    async def test_client_error_is_rejected(self, adapter, shopify):
        shopify.on("product", httpx.Response(401, text="Invalid API key"))
        with pytest.raises(CommerceRejectedError):
            await adapter.get_product("9001")

    async def test_create_is_not_retried_after_sending(self, adapter, shopify):
        shopify.on("productOptions", OPTIONS)
        shopify.on("productBundleCreate", httpx.Response(503))

        with pytest.raises(TransientCommerceError):
            await adapter.create_composite(_payload())
        assert len(shopify.calls("productBundleCreate")) == 1

    async def test_create_is_retried_when_never_sent(self, adapter, shopify):
        shopify.on("productOptions", OPTIONS)
        shopify.on("productBundleCreate", httpx.ConnectError("connection refused"))

        with pytest.raises(CommerceConnectError):
            await adapter.create_composite(_payload())
        assert len(shopify.calls("productBundleCreate")) == 3


# ── Construction ────────────────────────────────────────────────────────────


class TestBuildCommercePlatform:
    def test_not_configured(self):
        assert build_commerce_platform(SimpleNamespace(commerce_configured=False)) is None

    def test_configured(self):
        settings = SimpleNamespace(
            commerce_configured=True,
            COMMERCE_STORE_DOMAIN="fit-store.myshopify.com",
            COMMERCE_ACCESS_TOKEN="shpat_test",
            COMMERCE_API_VERSION="2024-10",
            COMMERCE_METAFIELD_NAMESPACE="bundle_sync",
            COMMERCE_TIMEOUT_SECONDS=5.0,
        )
        assert isinstance(build_commerce_platform(settings), ShopifyAdapter)

    def test_product_gid(self):
        assert product_gid("9001") == "gid://shopify/Product/9001"
        assert product_gid("gid://shopify/Product/9001") == "gid://shopify/Product/9001"


class TestMetrics:
    async def test_calls_are_counted_by_operation_and_result(self, adapter, shopify):
        def sample(result: str) -> float:
            return REGISTRY.get_sample_value(
                "commerce_requests_total", {"operation": "product", "result": result}
            ) or 0.0

        ok_before, transient_before = sample("ok"), sample("transient")
        shopify.on(
            "product",
            httpx.Response(503),
            httpx.Response(200, json={"data": {"product": PRODUCT_NODE}}),
        )

        await adapter.get_product("9001")

        assert sample("transient") == transient_before + 1
        assert sample("ok") == ok_before + 1
