"""Build the platform push payload for a bundle."""

from __future__ import annotations

from decimal import Decimal
from html import escape

from src.bundlesync.commerce.schemas import ExternalProduct, PushComponent, PushPayload
from src.bundlesync.sync.schemas import BundleRead, ServiceItem


def bundle_handle(bundle_id: str) -> str:
    """Deterministic platform handle; lets a lost create be found again."""
    return f"bundle-{bundle_id}"


def _service_line(service: ServiceItem) -> str:
    line = service.name
    if service.sessions:
        line = f"{line} ({service.sessions} sessions)"
    return line


def _description_html(bundle: BundleRead) -> str:
    parts: list[str] = []
    if bundle.description:
        parts.append(f"<p>{escape(bundle.description)}</p>")
    if bundle.components:
        items = "".join(
            f"<li>{c.quantity} x {escape(c.name or c.external_product_id)}</li>"
            for c in bundle.components
        )
        parts.append(f"<h3>Included products</h3><ul>{items}</ul>")
    if bundle.services:
        items = "".join(f"<li>{escape(_service_line(s))}</li>" for s in bundle.services)
        parts.append(f"<h3>Included services</h3><ul>{items}</ul>")
    return "".join(parts)


def build_push_payload(bundle: BundleRead) -> PushPayload:
    """Compute the payload (component refs, quantities, price, service summary)."""
    return PushPayload(
        bundle_id=bundle.id,
        handle=bundle_handle(bundle.id),
        title=bundle.title,
        description_html=_description_html(bundle),
        price=bundle.price,
        trainer_id=bundle.trainer_id,
        image_url=bundle.image_url,
        components=[
            PushComponent(
                external_product_id=c.external_product_id,
                quantity=c.quantity,
                name=c.name,
            )
            for c in bundle.components
        ],
        services=[_service_line(s) for s in bundle.services],
    )


def diff_external(bundle: BundleRead, product: ExternalProduct) -> list[str]:
    """Names of the fields where the platform product differs from the bundle."""
    differences: list[str] = []
    if product.title != bundle.title:
        differences.append("title")
    if product.price is not None and Decimal(product.price) != Decimal(bundle.price):
        differences.append("price")
    if product.components is not None:
        local = sorted((c.external_product_id, c.quantity) for c in bundle.components)
        remote = sorted((c.external_product_id, c.quantity) for c in product.components)
        if local != remote:
            differences.append("components")
    return differences
