"""Tests for classifying product-update events as edits, echoes or stale."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from src.bundlesync.sync.conflict import UpdateClassification, classify_product_update
from src.bundlesync.sync.schemas import SyncRecordRead, SyncStatus

PUSHED_AT = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(seconds=10)


def _record(**overrides) -> SyncRecordRead:
    fields = {
        "id": "rec-1",
        "bundle_id": "b-1",
        "external_id": "ext-123",
        "status": SyncStatus.SYNCED,
        "version": 4,
        "last_pushed_version": 7,
        "last_pushed_at": PUSHED_AT,
    }
    fields.update(overrides)
    return SyncRecordRead(**fields)


def _classify(record: SyncRecordRead, **kwargs) -> UpdateClassification:
    params = {
        "own_product": True,
        "event_version": None,
        "event_updated_at": None,
        "received_at": PUSHED_AT + timedelta(minutes=5),
        "suppression_window": WINDOW,
    }
    params.update(kwargs)
    return classify_product_update(record, **params)


class TestVersionedMarker:
    """Own product with a version on both sides: versions decide."""

    def test_newer_version_is_conflict(self):
        assert _classify(_record(), event_version=9) == UpdateClassification.CONFLICT

    def test_same_version_is_echo(self):
        # Even a late delivery of our own push is an echo.
        result = _classify(
            _record(),
            event_version=7,
            event_updated_at=PUSHED_AT + timedelta(hours=1),
        )
        assert result == UpdateClassification.ECHO

    def test_older_version_is_stale(self):
        assert _classify(_record(), event_version=6) == UpdateClassification.STALE

    def test_component_ignores_versions(self):
        result = _classify(
            _record(),
            own_product=False,
            event_version=7,
            event_updated_at=PUSHED_AT + timedelta(minutes=1),
        )
        assert result == UpdateClassification.CONFLICT


class TestTimestampMarker:
    def test_update_inside_window_is_echo(self):
        record = _record(last_pushed_version=None)
        result = _classify(record, event_updated_at=PUSHED_AT + timedelta(seconds=4))
        assert result == UpdateClassification.ECHO

    def test_update_before_marker_is_echo(self):
        record = _record(last_pushed_version=None)
        result = _classify(record, event_updated_at=PUSHED_AT - timedelta(minutes=1))
        assert result == UpdateClassification.ECHO

    def test_update_after_window_is_conflict(self):
        record = _record(last_pushed_version=None)
        result = _classify(record, event_updated_at=PUSHED_AT + timedelta(seconds=11))
        assert result == UpdateClassification.CONFLICT

    def test_arrival_time_used_without_timestamp(self):
        record = _record(last_pushed_version=None)
        assert (
            _classify(record, received_at=PUSHED_AT + timedelta(seconds=3))
            == UpdateClassification.ECHO
        )
        assert (
            _classify(record, received_at=PUSHED_AT + timedelta(minutes=3))
            == UpdateClassification.CONFLICT
        )

    def test_no_marker_at_all_is_conflict(self):
        record = _record(last_pushed_version=None, last_pushed_at=None)
        assert _classify(record) == UpdateClassification.CONFLICT


class TestStatusGate:
    def test_only_synced_records_can_conflict(self):
        for status in (SyncStatus.DRAFT, SyncStatus.PENDING_PUSH, SyncStatus.FAILED, SyncStatus.CONFLICT):
            result = _classify(_record(status=status), event_version=99)
            assert result == UpdateClassification.NOT_SYNCED
