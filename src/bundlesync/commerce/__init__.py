"""Commerce platform integration -- adapter interface and Shopify backend."""

from src.bundlesync.commerce.adapter import CommercePlatform
from src.bundlesync.commerce.errors import (
    CommerceConnectError,
    CommerceError,
    CommerceNotFoundError,
    CommerceRejectedError,
    TransientCommerceError,
)

__all__ = [
    "CommercePlatform",
    "CommerceConnectError",
    "CommerceError",
    "CommerceNotFoundError",
    "CommerceRejectedError",
    "TransientCommerceError",
]
