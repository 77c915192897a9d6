"""Errors raised by commerce platform adapters.

The split matters to callers: transient errors may be retried, rejections
never are, and a connect error is the only failure known to have happened
before the request reached the platform.
"""

from __future__ import annotations


class CommerceError(Exception):
    """Base class for commerce platform call failures."""


class TransientCommerceError(CommerceError):
    """Network failure, timeout, 5xx, or rate limit. Safe to retry idempotent calls."""


class CommerceConnectError(TransientCommerceError):
    """The connection was never established, so the request was not sent."""


class CommerceRejectedError(CommerceError):
    """The platform refused the request (validation, permissions).

    Args:
        message: Human-readable summary kept for the reviewer.
        user_errors: Raw field-level errors from the platform, if any.
    """

    def __init__(self, message: str, user_errors: list[dict] | None = None) -> None:
        self.user_errors = user_errors or []
        super().__init__(message)


class CommerceNotFoundError(CommerceError):
    def __init__(self, resource_id: str) -> None:
        self.resource_id = resource_id
        super().__init__(f"Resource {resource_id} not found on commerce platform")
