"""Legal SyncRecord transitions.

Every status change is keyed on (from_status, to_status, trigger). The
reconcile triggers are only issued by the explicit reconcile operation, so an
event handler can never move a bundle out of ``conflict``.
"""

from __future__ import annotations

from src.bundlesync.sync.errors import IllegalTransitionError
from src.bundlesync.sync.schemas import SyncStatus, SyncTrigger

S = SyncStatus
T = SyncTrigger

TRANSITIONS: dict[tuple[SyncStatus, SyncStatus], frozenset[SyncTrigger]] = {
    (S.DRAFT, S.PENDING_PUSH): frozenset({T.APPROVAL}),
    (S.SYNCED, S.PENDING_PUSH): frozenset({T.REPUBLISH}),
    (S.FAILED, S.PENDING_PUSH): frozenset({T.MANUAL_RETRY}),
    (S.CONFLICT, S.PENDING_PUSH): frozenset({T.RECONCILE_PUSH}),
    (S.PENDING_PUSH, S.SYNCED): frozenset({T.PUBLISH_SUCCEEDED}),
    (S.PENDING_PUSH, S.FAILED): frozenset({T.PUBLISH_FAILED}),
    (S.CONFLICT, S.SYNCED): frozenset({T.RECONCILE_PULL}),
    (S.SYNCED, S.CONFLICT): frozenset(
        {T.EXTERNAL_EDIT, T.COMPONENT_DELETED, T.CATALOG_DRIFT}
    ),
    (S.SYNCED, S.FAILED): frozenset({T.EXTERNAL_DELETED, T.CATALOG_MISSING}),
}

# Triggers an inbound webhook is allowed to request.
EVENT_TRIGGERS: frozenset[SyncTrigger] = frozenset(
    {T.EXTERNAL_EDIT, T.COMPONENT_DELETED, T.EXTERNAL_DELETED}
)

# Status a push-starting trigger is legal from.
PUSH_TRIGGER_FOR_STATUS: dict[SyncStatus, SyncTrigger] = {
    S.DRAFT: T.APPROVAL,
    S.SYNCED: T.REPUBLISH,
    S.FAILED: T.MANUAL_RETRY,
}


def is_legal(from_status: SyncStatus, to_status: SyncStatus, trigger: SyncTrigger) -> bool:
    """Return True if the transition is an edge of the state machine."""
    return trigger in TRANSITIONS.get((from_status, to_status), frozenset())


def check_transition(
    from_status: SyncStatus,
    to_status: SyncStatus,
    trigger: SyncTrigger,
) -> None:
    """Raise IllegalTransitionError unless the transition is legal."""
    if not is_legal(from_status, to_status, trigger):
        raise IllegalTransitionError(from_status.value, to_status.value, trigger.value)


def allowed_targets(from_status: SyncStatus) -> dict[SyncStatus, frozenset[SyncTrigger]]:
    """Map every status reachable from ``from_status`` to the triggers that allow it."""
    return {to: triggers for (frm, to), triggers in TRANSITIONS.items() if frm == from_status}
