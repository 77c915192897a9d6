"""Exceptions raised by the sync state store and orchestrator."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for bundle sync failures."""


class IllegalTransitionError(SyncError):
    """The state machine has no edge for (from_status, to_status, trigger)."""

    def __init__(self, from_status: str, to_status: str, trigger: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.trigger = trigger
        super().__init__(
            f"Illegal sync transition {from_status} -> {to_status} (trigger={trigger})"
        )


class StaleSyncRecordError(SyncError):
    """Another operation changed the SyncRecord since it was read."""

    def __init__(self, bundle_id: str, expected_version: int) -> None:
        self.bundle_id = bundle_id
        self.expected_version = expected_version
        super().__init__(
            f"SyncRecord for bundle {bundle_id} is no longer at version {expected_version}"
        )


class SyncInProgressError(SyncError):
    """A push for this bundle is already pending."""

    def __init__(self, bundle_id: str) -> None:
        self.bundle_id = bundle_id
        super().__init__(f"A push for bundle {bundle_id} is already in progress")


class BundleNotFoundError(SyncError):
    def __init__(self, bundle_id: str) -> None:
        self.bundle_id = bundle_id
        super().__init__(f"Bundle {bundle_id} not found")


class SyncRecordNotFoundError(SyncError):
    def __init__(self, bundle_id: str) -> None:
        self.bundle_id = bundle_id
        super().__init__(f"No sync record for bundle {bundle_id}")


class PlatformNotConfiguredError(SyncError):
    def __init__(self) -> None:
        super().__init__("Commerce platform is not configured")
