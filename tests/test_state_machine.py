"""Tests for the SyncRecord transition table."""

from __future__ import annotations

import pytest

from src.bundlesync.sync.errors import IllegalTransitionError
from src.bundlesync.sync.schemas import SyncStatus, SyncTrigger
from src.bundlesync.sync.state_machine import (
    EVENT_TRIGGERS,
    PUSH_TRIGGER_FOR_STATUS,
    TRANSITIONS,
    allowed_targets,
    check_transition,
    is_legal,
)

S = SyncStatus
T = SyncTrigger


class TestLegalEdges:
    @pytest.mark.parametrize(
        ("from_status", "to_status", "trigger"),
        [
            (S.DRAFT, S.PENDING_PUSH, T.APPROVAL),
            (S.SYNCED, S.PENDING_PUSH, T.REPUBLISH),
            (S.FAILED, S.PENDING_PUSH, T.MANUAL_RETRY),
            (S.CONFLICT, S.PENDING_PUSH, T.RECONCILE_PUSH),
            (S.PENDING_PUSH, S.SYNCED, T.PUBLISH_SUCCEEDED),
            (S.PENDING_PUSH, S.FAILED, T.PUBLISH_FAILED),
            (S.CONFLICT, S.SYNCED, T.RECONCILE_PULL),
            (S.SYNCED, S.CONFLICT, T.EXTERNAL_EDIT),
            (S.SYNCED, S.CONFLICT, T.COMPONENT_DELETED),
            (S.SYNCED, S.FAILED, T.EXTERNAL_DELETED),
        ],
    )
    def test_edge_is_legal(self, from_status, to_status, trigger):
        assert is_legal(from_status, to_status, trigger)
        check_transition(from_status, to_status, trigger)


class TestIllegalEdges:
    def test_wrong_trigger_for_a_known_edge(self):
        assert not is_legal(S.DRAFT, S.PENDING_PUSH, T.MANUAL_RETRY)

    def test_draft_cannot_sync_directly(self):
        with pytest.raises(IllegalTransitionError) as exc_info:
            check_transition(S.DRAFT, S.SYNCED, T.PUBLISH_SUCCEEDED)
        assert exc_info.value.from_status == "draft"
        assert exc_info.value.to_status == "synced"

    def test_no_event_trigger_leaves_conflict(self):
        for to_status in SyncStatus:
            for trigger in EVENT_TRIGGERS:
                assert not is_legal(S.CONFLICT, to_status, trigger)

    def test_only_reconcile_leaves_conflict(self):
        triggers = set().union(*allowed_targets(S.CONFLICT).values())
        assert triggers == {T.RECONCILE_PUSH, T.RECONCILE_PULL}

    def test_nothing_returns_to_draft(self):
        assert all(to != S.DRAFT for (_, to) in TRANSITIONS)


class TestTriggerTables:
    def test_event_triggers_only_leave_synced(self):
        for (from_status, _), triggers in TRANSITIONS.items():
            if triggers & EVENT_TRIGGERS:
                assert from_status == S.SYNCED

    def test_push_triggers_exclude_conflict_and_pending(self):
        assert S.CONFLICT not in PUSH_TRIGGER_FOR_STATUS
        assert S.PENDING_PUSH not in PUSH_TRIGGER_FOR_STATUS
        for status, trigger in PUSH_TRIGGER_FOR_STATUS.items():
            assert is_legal(status, S.PENDING_PUSH, trigger)
