"""Shopify Admin GraphQL adapter for composite offerings (native bundles).

Implements CommercePlatform on top of the Bundles API:
- productBundleCreate / productBundleUpdate return a ProductBundleOperation
- productOperation(id) is polled for the operation status
- productUpdate + productVariantsBulkUpdate finalize handle, description,
  metafields and price

Retry policy (tenacity, 3 attempts, exponential backoff 1-10s):
- Reads, updates and polls retry on any TransientCommerceError
- productBundleCreate is not idempotent, so it only retries when the
  connection was never established (CommerceConnectError)
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.bundlesync.commerce.adapter import CommercePlatform
from src.bundlesync.commerce.errors import (
    CommerceConnectError,
    CommerceNotFoundError,
    CommerceRejectedError,
    TransientCommerceError,
)
from src.bundlesync.commerce.schemas import (
    ExternalProduct,
    OperationHandle,
    OperationResult,
    OperationState,
    PushComponent,
    PushPayload,
)
from src.bundlesync.core.monitoring import commerce_requests_total

logger = structlog.get_logger(__name__)

_commerce_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(TransientCommerceError),
    reraise=True,
)

_create_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type(CommerceConnectError),
    reraise=True,
)

PRODUCT_GID_PREFIX = "gid://shopify/Product/"

# ── GraphQL Documents ───────────────────────────────────────────────────────

PRODUCT_OPTIONS_QUERY = """
query productOptions($id: ID!) {
  product(id: $id) {
    options { id name optionValues { name } }
  }
}
"""

BUNDLE_CREATE_MUTATION = """
mutation productBundleCreate($input: ProductBundleCreateInput!) {
  productBundleCreate(input: $input) {
    productBundleOperation { id status }
    userErrors { field message }
  }
}
"""

BUNDLE_UPDATE_MUTATION = """
mutation productBundleUpdate($input: ProductBundleUpdateInput!) {
  productBundleUpdate(input: $input) {
    productBundleOperation { id status }
    userErrors { field message }
  }
}
"""

OPERATION_QUERY = """
query productOperation($id: ID!) {
  productOperation(id: $id) {
    ... on ProductBundleOperation {
      id
      status
      product { id }
      userErrors { field message code }
    }
  }
}
"""

PRODUCT_QUERY = """
query product($id: ID!, $namespace: String!) {
  product(id: $id) {
    id
    handle
    title
    updatedAt
    variants(first: 1) { nodes { id price } }
    metafield(namespace: $namespace, key: "bundle_components") { value }
  }
}
"""

PRODUCT_BY_HANDLE_QUERY = """
query productByHandle($query: String!, $namespace: String!) {
  products(first: 1, query: $query) {
    nodes {
      id
      handle
      title
      updatedAt
      variants(first: 1) { nodes { id price } }
      metafield(namespace: $namespace, key: "bundle_components") { value }
    }
  }
}
"""

RECENT_PRODUCTS_QUERY = """
query recentProducts($query: String!, $namespace: String!) {
  products(first: 10, query: $query, sortKey: CREATED_AT, reverse: true) {
    nodes {
      id
      handle
      title
      createdAt
      updatedAt
      variants(first: 1) { nodes { id price } }
      metafield(namespace: $namespace, key: "bundle_components") { value }
    }
  }
}
"""

PRODUCT_UPDATE_MUTATION = """
mutation productUpdate($input: ProductInput!) {
  productUpdate(input: $input) {
    product { id }
    userErrors { field message }
  }
}
"""

VARIANT_PRICE_MUTATION = """
mutation productVariantsBulkUpdate($productId: ID!, $variants: [ProductVariantsBulkInput!]!) {
  productVariantsBulkUpdate(productId: $productId, variants: $variants) {
    productVariants { id price }
    userErrors { field message }
  }
}
"""


def product_gid(product_id: str) -> str:
    """Normalize a numeric or global product id to the global id form."""
    product_id = str(product_id)
    if product_id.startswith("gid://"):
        return product_id
    return f"{PRODUCT_GID_PREFIX}{product_id}"


def _operation_name(document: str) -> str:
    """Name of the GraphQL operation, e.g. "productBundleCreate"."""
    return document.split("(", 1)[0].split()[-1]


def _parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value.replace("Z", "+00:00")) if value else None


def _check_user_errors(operation: str, user_errors: list[dict] | None) -> None:
    if user_errors:
        message = "; ".join(e.get("message", "unknown error") for e in user_errors)
        raise CommerceRejectedError(f"{operation}: {message}", user_errors)


class ShopifyAdapter(CommercePlatform):
    """Shopify Admin GraphQL implementation of CommercePlatform.

    Args:
        store_domain: Store host, e.g. "my-store.myshopify.com".
        access_token: Admin API access token.
        api_version: Admin API version path segment.
        metafield_namespace: Namespace for bundle metadata metafields.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass httpx.MockTransport).
    """

    def __init__(
        self,
        store_domain: str,
        access_token: str,
        api_version: str = "2024-10",
        metafield_namespace: str = "bundle_sync",
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = f"https://{store_domain}/admin/api/{api_version}/graphql.json"
        self._headers = {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }
        self._namespace = metafield_namespace
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    # ── Transport ───────────────────────────────────────────────────────

    async def _execute(self, document: str, variables: dict[str, Any]) -> dict[str, Any]:
        operation = _operation_name(document)
        try:
            data = await self._send(document, variables)
        except TransientCommerceError:
            commerce_requests_total.labels(operation, "transient").inc()
            raise
        except CommerceRejectedError:
            commerce_requests_total.labels(operation, "rejected").inc()
            raise
        commerce_requests_total.labels(operation, "ok").inc()
        return data

    async def _send(self, document: str, variables: dict[str, Any]) -> dict[str, Any]:
        """POST one GraphQL document and map failures onto CommerceError types."""
        try:
            async with self._client() as client:
                response = await client.post(
                    self._endpoint,
                    json={"query": document, "variables": variables},
                )
        except httpx.ConnectError as exc:
            raise CommerceConnectError(f"Could not connect to commerce platform: {exc}") from exc
        except httpx.TimeoutException as exc:
            raise TransientCommerceError(f"Commerce platform timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientCommerceError(f"Commerce platform transport error: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientCommerceError(
                f"Commerce platform returned HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            raise CommerceRejectedError(
                f"Commerce platform returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TransientCommerceError(
                f"Commerce platform returned a non-JSON body (HTTP {response.status_code})"
            ) from exc
        if not isinstance(body, dict):
            raise TransientCommerceError("Commerce platform returned an unexpected response shape")
        errors = body.get("errors")
        if errors:
            if any(e.get("extensions", {}).get("code") == "THROTTLED" for e in errors):
                raise TransientCommerceError("Commerce platform throttled the request")
            message = "; ".join(e.get("message", "unknown error") for e in errors)
            raise CommerceRejectedError(message, errors)
        return body.get("data") or {}

    @_commerce_retry
    async def _query(self, document: str, variables: dict[str, Any]) -> dict[str, Any]:
        return await self._execute(document, variables)

    @_create_retry
    async def _submit_create(self, variables: dict[str, Any]) -> dict[str, Any]:
        return await self._execute(BUNDLE_CREATE_MUTATION, variables)

    # ── Composite Offerings ─────────────────────────────────────────────

    async def _component_inputs(self, components: list[PushComponent]) -> list[dict[str, Any]]:
        """Build ProductBundleComponentInput entries including every option value.

        The Bundles API requires each component option to be mapped, even
        for products that only have the default variant.
        """
        inputs: list[dict[str, Any]] = []
        for component in components:
            gid = product_gid(component.external_product_id)
            data = await self._query(PRODUCT_OPTIONS_QUERY, {"id": gid})
            product = data.get("product")
            if product is None:
                raise CommerceRejectedError(f"Component product {gid} does not exist")
            inputs.append({
                "productId": gid,
                "quantity": component.quantity,
                "optionSelections": [
                    {
                        "componentOptionId": opt["id"],
                        "name": opt["name"],
                        "values": [v["name"] for v in opt.get("optionValues", [])],
                    }
                    for opt in product.get("options", [])
                ],
            })
        return inputs

    async def create_composite(self, payload: PushPayload) -> OperationHandle:
        components = await self._component_inputs(payload.components)
        data = await self._submit_create(
            {"input": {"title": payload.title, "components": components}}
        )
        result = data.get("productBundleCreate") or {}
        _check_user_errors("productBundleCreate", result.get("userErrors"))
        operation = result.get("productBundleOperation")
        if not operation:
            raise CommerceRejectedError("productBundleCreate returned no operation")
        logger.info(
            "shopify.bundle_create_submitted",
            bundle_id=payload.bundle_id,
            operation_id=operation["id"],
        )
        return OperationHandle(
            operation_id=operation["id"],
            state=OperationState(operation.get("status", "CREATED")),
        )

    async def update_composite(self, external_id: str, payload: PushPayload) -> OperationHandle:
        components = await self._component_inputs(payload.components)
        data = await self._query(
            BUNDLE_UPDATE_MUTATION,
            {
                "input": {
                    "productId": product_gid(external_id),
                    "title": payload.title,
                    "components": components,
                }
            },
        )
        result = data.get("productBundleUpdate") or {}
        _check_user_errors("productBundleUpdate", result.get("userErrors"))
        operation = result.get("productBundleOperation")
        if not operation:
            raise CommerceRejectedError("productBundleUpdate returned no operation")
        logger.info(
            "shopify.bundle_update_submitted",
            bundle_id=payload.bundle_id,
            external_id=external_id,
            operation_id=operation["id"],
        )
        return OperationHandle(
            operation_id=operation["id"],
            state=OperationState(operation.get("status", "CREATED")),
        )

    async def get_operation(self, operation_id: str) -> OperationResult:
        """Poll an operation. COMPLETE with user errors or no product is FAILED."""
        data = await self._query(OPERATION_QUERY, {"id": operation_id})
        operation = data.get("productOperation")
        if operation is None:
            raise CommerceNotFoundError(operation_id)

        state = OperationState(operation["status"])
        product = operation.get("product") or {}
        user_errors = operation.get("userErrors") or []
        error = "; ".join(e.get("message", "") for e in user_errors) or None

        if state == OperationState.COMPLETE and (user_errors or not product.get("id")):
            state = OperationState.FAILED
            error = error or "Operation completed without a product"

        return OperationResult(
            operation_id=operation_id,
            state=state,
            product_id=product.get("id"),
            error=error,
        )

    async def finalize_composite(self, external_id: str, payload: PushPayload) -> None:
        """Attach handle, description, metafields and price to a created bundle."""
        gid = product_gid(external_id)
        product = await self._fetch_product_node(gid)
        if product is None:
            raise CommerceNotFoundError(gid)

        components_json = json.dumps(
            [c.model_dump(mode="json") for c in payload.components]
        )
        data = await self._query(
            PRODUCT_UPDATE_MUTATION,
            {
                "input": {
                    "id": gid,
                    "handle": payload.handle,
                    "descriptionHtml": payload.description_html,
                    "metafields": [
                        self._metafield("trainer_id", payload.trainer_id, "single_line_text_field"),
                        self._metafield("bundle_id", payload.bundle_id, "single_line_text_field"),
                        self._metafield("bundle_components", components_json, "json"),
                        self._metafield(
                            "component_count", str(len(payload.components)), "number_integer"
                        ),
                    ],
                }
            },
        )
        _check_user_errors("productUpdate", (data.get("productUpdate") or {}).get("userErrors"))

        variants = (product.get("variants") or {}).get("nodes") or []
        if variants:
            data = await self._query(
                VARIANT_PRICE_MUTATION,
                {
                    "productId": gid,
                    "variants": [{"id": variants[0]["id"], "price": str(payload.price)}],
                },
            )
            _check_user_errors(
                "productVariantsBulkUpdate",
                (data.get("productVariantsBulkUpdate") or {}).get("userErrors"),
            )
        logger.info("shopify.bundle_finalized", bundle_id=payload.bundle_id, external_id=gid)

    def _metafield(self, key: str, value: str, type_: str) -> dict[str, str]:
        return {"namespace": self._namespace, "key": key, "value": value, "type": type_}

    # ── Reads ───────────────────────────────────────────────────────────

    async def _fetch_product_node(self, gid: str) -> dict[str, Any] | None:
        data = await self._query(PRODUCT_QUERY, {"id": gid, "namespace": self._namespace})
        return data.get("product")

    async def get_product(self, external_id: str) -> ExternalProduct:
        gid = product_gid(external_id)
        node = await self._fetch_product_node(gid)
        if node is None:
            raise CommerceNotFoundError(gid)
        return self._node_to_product(node)

    async def find_product_by_handle(self, handle: str) -> ExternalProduct | None:
        data = await self._query(
            PRODUCT_BY_HANDLE_QUERY,
            {"query": f"handle:{handle}", "namespace": self._namespace},
        )
        nodes = (data.get("products") or {}).get("nodes") or []
        for node in nodes:
            if node.get("handle") == handle:
                return self._node_to_product(node)
        return None

    async def find_created_composite(
        self, payload: PushPayload, since: datetime
    ) -> ExternalProduct | None:
        """Newest unclaimed product with the payload's title created since ``since``.

        A product already finalized for a bundle carries a ``bundle-`` handle
        and component metadata; those belong to another bundle unless the
        handle is ours.
        """
        title = payload.title.replace("\\", "\\\\").replace('"', '\\"')
        stamp = since.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        data = await self._query(
            RECENT_PRODUCTS_QUERY,
            {"query": f'title:"{title}" AND created_at:>={stamp}', "namespace": self._namespace},
        )
        for node in (data.get("products") or {}).get("nodes") or []:
            if node.get("title") != payload.title:
                continue
            handle = node.get("handle") or ""
            claimed = handle.startswith("bundle-") or node.get("metafield")
            if claimed and handle != payload.handle:
                continue
            return self._node_to_product(node)
        return None

    def _node_to_product(self, node: dict[str, Any]) -> ExternalProduct:
        variants = (node.get("variants") or {}).get("nodes") or []
        price: Decimal | None = None
        if variants and variants[0].get("price") is not None:
            try:
                price = Decimal(str(variants[0]["price"]))
            except InvalidOperation:
                logger.warning("shopify.bad_price", product_id=node.get("id"))

        components: list[PushComponent] | None = None
        metafield = node.get("metafield")
        if metafield and metafield.get("value"):
            try:
                components = [PushComponent.model_validate(c) for c in json.loads(metafield["value"])]
            except (ValueError, TypeError):
                logger.warning("shopify.bad_component_metafield", product_id=node.get("id"))

        return ExternalProduct(
            id=node["id"],
            handle=node.get("handle"),
            title=node.get("title", ""),
            price=price,
            created_at=_parse_timestamp(node.get("createdAt")),
            updated_at=_parse_timestamp(node.get("updatedAt")),
            components=components,
        )


def build_commerce_platform(settings: Any) -> CommercePlatform | None:
    """Construct the configured platform adapter, or None if not configured."""
    if not settings.commerce_configured:
        return None
    return ShopifyAdapter(
        store_domain=settings.COMMERCE_STORE_DOMAIN,
        access_token=settings.COMMERCE_ACCESS_TOKEN,
        api_version=settings.COMMERCE_API_VERSION,
        metafield_namespace=settings.COMMERCE_METAFIELD_NAMESPACE,
        timeout=settings.COMMERCE_TIMEOUT_SECONDS,
    )
