"""Topic enum and strict payload schemas for inbound commerce webhooks.

Each topic has an explicit schema validated before dispatch. Validation is
strict (no type coercion, required fields must be present); fields the
platform sends that we do not model are ignored so new provider fields do
not break ingestion. Platform ids arrive as JSON numbers or strings and are
normalized to strings. Timestamps must carry a UTC offset.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import AfterValidator, AwareDatetime, BaseModel, ConfigDict, Field

from src.bundlesync.commerce.shopify import product_gid

ExternalId = Annotated[int | str, AfterValidator(str)]


class WebhookTopic(str, Enum):
    ORDERS_CREATE = "orders/create"
    ORDERS_PAID = "orders/paid"
    ORDERS_FULFILLED = "orders/fulfilled"
    FULFILLMENTS_CREATE = "fulfillments/create"
    FULFILLMENTS_UPDATE = "fulfillments/update"
    PRODUCTS_UPDATE = "products/update"
    PRODUCTS_DELETE = "products/delete"

    @classmethod
    def parse(cls, value: str | None) -> WebhookTopic | None:
        """Return the topic for a header value, or None if we don't handle it."""
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return None


class _Payload(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore")


# ── Orders ──────────────────────────────────────────────────────────────────


class LineItemProperty(_Payload):
    name: str
    value: str | int | float | bool | None = None


class LineItem(_Payload):
    id: ExternalId
    product_id: ExternalId | None = None
    variant_id: ExternalId | None = None
    title: str = ""
    quantity: int = 1
    price: str | None = None
    properties: list[LineItemProperty] = Field(default_factory=list)

    def property_value(self, name: str) -> str | None:
        for prop in self.properties:
            if prop.name == name and prop.value is not None:
                return str(prop.value)
        return None


class Customer(_Payload):
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None

    @property
    def full_name(self) -> str | None:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or None


class FulfillmentInfo(_Payload):
    id: ExternalId
    status: str | None = None
    shipment_status: str | None = None
    tracking_company: str | None = None
    tracking_number: str | None = None
    tracking_numbers: list[str] = Field(default_factory=list)
    tracking_url: str | None = None
    tracking_urls: list[str] = Field(default_factory=list)
    estimated_delivery_at: AwareDatetime | None = None
    created_at: AwareDatetime | None = None
    updated_at: AwareDatetime | None = None

    @property
    def primary_tracking_number(self) -> str | None:
        return self.tracking_number or next(iter(self.tracking_numbers), None)

    @property
    def primary_tracking_url(self) -> str | None:
        return self.tracking_url or next(iter(self.tracking_urls), None)


class OrderPayload(_Payload):
    id: ExternalId
    name: str | None = None
    order_number: ExternalId | None = None
    email: str | None = None
    financial_status: str | None = None
    fulfillment_status: str | None = None
    total_price: str | None = None
    currency: str | None = None
    customer: Customer | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    fulfillments: list[FulfillmentInfo] = Field(default_factory=list)
    created_at: AwareDatetime | None = None
    updated_at: AwareDatetime | None = None

    @property
    def customer_email(self) -> str | None:
        return self.email or (self.customer.email if self.customer else None)


class FulfillmentPayload(FulfillmentInfo):
    order_id: ExternalId


# ── Products ────────────────────────────────────────────────────────────────


class ProductPayload(_Payload):
    id: ExternalId
    admin_graphql_api_id: str | None = None
    title: str | None = None
    handle: str | None = None
    updated_at: AwareDatetime | None = None
    version: int | None = None

    @property
    def external_ids(self) -> set[str]:
        """Every form of this product's id that may be stored locally."""
        ids = {self.id, product_gid(self.id)}
        if self.admin_graphql_api_id:
            ids.add(self.admin_graphql_api_id)
        return ids


class ProductDeletePayload(_Payload):
    id: ExternalId

    @property
    def external_ids(self) -> set[str]:
        return {self.id, product_gid(self.id)}


TOPIC_SCHEMAS: dict[WebhookTopic, type[_Payload]] = {
    WebhookTopic.ORDERS_CREATE: OrderPayload,
    WebhookTopic.ORDERS_PAID: OrderPayload,
    WebhookTopic.ORDERS_FULFILLED: OrderPayload,
    WebhookTopic.FULFILLMENTS_CREATE: FulfillmentPayload,
    WebhookTopic.FULFILLMENTS_UPDATE: FulfillmentPayload,
    WebhookTopic.PRODUCTS_UPDATE: ProductPayload,
    WebhookTopic.PRODUCTS_DELETE: ProductDeletePayload,
}


def parse_payload(topic: WebhookTopic, body: bytes) -> Any:
    """Validate the raw body against the topic's schema.

    Raises:
        pydantic.ValidationError: If the body is not valid JSON for the schema.
    """
    return TOPIC_SCHEMAS[topic].model_validate_json(body)
