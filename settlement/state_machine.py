"""
Reward lifecycle.

    pending -> submitted -> completed
       |           |------> anomalous
       |           '------> failed
       '--> completed | anomalous | failed

failed -> pending is only reachable through manual repair. Every change is
applied as a conditional update keyed on the status the caller last read.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from .errors import InvalidStateTransitionError
from .models import RewardRecord, RewardStatus, UpdateResult

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({RewardStatus.COMPLETED, RewardStatus.FAILED, RewardStatus.ANOMALOUS})
REFERENCED_STATUSES = frozenset({RewardStatus.SUBMITTED, RewardStatus.COMPLETED, RewardStatus.ANOMALOUS})

TRANSITIONS: dict[RewardStatus, frozenset] = {
    RewardStatus.PENDING: frozenset({
        RewardStatus.SUBMITTED,
        RewardStatus.COMPLETED,
        RewardStatus.ANOMALOUS,
        RewardStatus.FAILED,
    }),
    RewardStatus.SUBMITTED: frozenset({
        RewardStatus.COMPLETED,
        RewardStatus.ANOMALOUS,
        RewardStatus.FAILED,
    }),
    RewardStatus.COMPLETED: frozenset(),
    RewardStatus.FAILED: frozenset(),
    RewardStatus.ANOMALOUS: frozenset(),
}

MANUAL_TRANSITIONS: dict[RewardStatus, frozenset] = {
    RewardStatus.FAILED: frozenset({RewardStatus.PENDING}),
}

_KEEP = object()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: RewardStatus, target: RewardStatus, manual: bool = False) -> bool:
    if target in TRANSITIONS[current]:
        return True
    return manual and target in MANUAL_TRANSITIONS.get(current, frozenset())


def check_transition(current: RewardStatus, target: RewardStatus, manual: bool = False) -> None:
    if not can_transition(current, target, manual):
        raise InvalidStateTransitionError(f"Cannot move reward from {current.value} to {target.value}")


def reference_consistent(status: RewardStatus, transaction_ref: Optional[str]) -> bool:
    return (transaction_ref is not None) == (status in REFERENCED_STATUSES)


def transition_changes(
    record: RewardRecord,
    target: RewardStatus,
    transaction_ref=_KEEP,
    manual: bool = False,
    now: Optional[datetime] = None,
    note: Optional[str] = None,
    candidate_refs: Optional[list[str]] = None,
) -> dict:
    """Build the field changes for moving ``record`` to ``target``.

    A reference is carried into statuses that require one and dropped
    everywhere else; dropped references are kept in ``candidate_refs`` so the
    record still shows which transfer it was once linked to.
    """
    check_transition(record.status, target, manual)
    now = now or utcnow()

    ref = record.transaction_ref if transaction_ref is _KEEP else transaction_ref
    evidence = list(record.candidate_refs)
    for extra in candidate_refs or []:
        if extra not in evidence:
            evidence.append(extra)

    if target in REFERENCED_STATUSES:
        if not ref:
            raise InvalidStateTransitionError(f"{target.value} requires a transaction reference")
    else:
        if ref and ref not in evidence:
            evidence.append(ref)
        ref = None

    changes = {
        "status": target,
        "transaction_ref": ref,
        "candidate_refs": evidence,
    }
    if target == RewardStatus.SUBMITTED:
        changes["submitted_at"] = now
    if target in TERMINAL_STATUSES:
        changes["processed_at"] = now
    elif target == RewardStatus.PENDING:
        changes["processed_at"] = None
        changes["submitted_at"] = None
    if note is not None:
        changes["resolution_note"] = note
    return changes


def apply_transition(
    store,
    record: RewardRecord,
    target: RewardStatus,
    transaction_ref=_KEEP,
    manual: bool = False,
    actor: str = "system",
    now: Optional[datetime] = None,
    note: Optional[str] = None,
    candidate_refs: Optional[list[str]] = None,
) -> UpdateResult:
    changes = transition_changes(
        record,
        target,
        transaction_ref=transaction_ref,
        manual=manual,
        now=now,
        note=note,
        candidate_refs=candidate_refs,
    )
    result = store.update(record.id, record.status, changes, actor=actor)
    if result == UpdateResult.APPLIED:
        logger.info(
            "reward %s: %s -> %s (ref=%s, actor=%s)",
            record.id, record.status.value, target.value, changes["transaction_ref"], actor,
        )
    elif result == UpdateResult.GUARD_FAILED:
        logger.warning(
            "reward %s: lost race moving %s -> %s, another actor advanced it",
            record.id, record.status.value, target.value,
        )
    return result
