"""Conflict detection for external product edits.

Our own pushes make the platform emit product-update webhooks too. An update
only counts as a third-party edit when it is newer than the marker recorded at
our last push:

- Bundle product with a version on both sides: newer is a conflict, equal is
  our echo, older is a stale redelivery.
- Otherwise the update timestamp is compared with ``last_pushed_at``:
  anything at or before the marker, or inside the suppression window after
  it, is an echo.
- With no timestamp at all, arrival inside the suppression window is an echo.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from src.bundlesync.sync.schemas import SyncRecordRead, SyncStatus


class UpdateClassification(str, Enum):
    CONFLICT = "conflict"
    ECHO = "echo"
    STALE = "stale"
    NOT_SYNCED = "not_synced"


def classify_product_update(
    record: SyncRecordRead,
    *,
    own_product: bool,
    event_version: int | None,
    event_updated_at: datetime | None,
    received_at: datetime,
    suppression_window: timedelta,
) -> UpdateClassification:
    """Decide whether a product-update event is a genuine external edit.

    Args:
        record: Current SyncRecord of a bundle the product belongs to.
        own_product: True if the product is the bundle's own external product,
            False if it is one of its components.
        event_version: Version reported by the event, if the platform sends one.
        event_updated_at: Update timestamp reported by the event.
        received_at: When the webhook arrived.
        suppression_window: Echo window following our last push.

    Returns:
        CONFLICT only for a third-party edit of a synced bundle.
    """
    if record.status != SyncStatus.SYNCED:
        return UpdateClassification.NOT_SYNCED

    if own_product and event_version is not None and record.last_pushed_version is not None:
        if event_version > record.last_pushed_version:
            return UpdateClassification.CONFLICT
        if event_version == record.last_pushed_version:
            return UpdateClassification.ECHO
        return UpdateClassification.STALE

    marker = record.last_pushed_at
    if marker is None:
        return UpdateClassification.CONFLICT

    if event_updated_at is not None:
        if event_updated_at <= marker + suppression_window:
            return UpdateClassification.ECHO
        return UpdateClassification.CONFLICT

    if received_at <= marker + suppression_window:
        return UpdateClassification.ECHO
    return UpdateClassification.CONFLICT
