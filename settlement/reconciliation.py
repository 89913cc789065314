"""
Reconciliation between the record store and the ledger.

Submitted records are checked by transaction reference. Pending records are
checked by business identity (recipient, amount, source reference) inside a
lookback window, which is how a transfer that reached the ledger while the
store update was lost gets linked back to its reward. Nothing here writes to
the ledger.
"""

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Iterable, Optional

from .errors import DuplicateReferenceError, LedgerUnavailableError
from .models import (
    Decision,
    ReconcileDecision,
    ReconciliationReport,
    RewardRecord,
    RewardStatus,
    UpdateResult,
)
from .state_machine import apply_transition

logger = logging.getLogger(__name__)

RECONCILABLE_STATUSES = (RewardStatus.PENDING, RewardStatus.SUBMITTED)


class ReconciliationEngine:
    def __init__(
        self,
        store,
        ledger,
        grace_period: timedelta = timedelta(minutes=15),
        lookback_window: timedelta = timedelta(days=1),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.grace_period = grace_period
        self.lookback_window = lookback_window
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def run(
        self,
        batch_size: int = 50,
        max_records: Optional[int] = None,
        statuses: Iterable[RewardStatus] = RECONCILABLE_STATUSES,
    ) -> ReconciliationReport:
        """Scan every pending/submitted record page by page."""
        statuses = tuple(statuses)
        report = ReconciliationReport()
        cursor = None
        while True:
            page = self.store.find(statuses, limit=batch_size, cursor=cursor)
            records = page.records
            if max_records is not None:
                records = records[:max(max_records - report.examined, 0)]
            report.merge(self.reconcile(records))
            cursor = page.next_cursor
            if cursor is None or (max_records is not None and report.examined >= max_records):
                break
        logger.info(
            "reconciliation pass: examined=%d completed=%d adopted=%d anomalous=%d failed=%d conflicts=%d unreachable=%d",
            report.examined, report.completed, report.adopted, report.anomalous, report.failed,
            report.conflicts, report.unreachable,
        )
        return report

    def reconcile(self, records: Iterable[RewardRecord]) -> ReconciliationReport:
        report = ReconciliationReport()
        records = list(records)
        submitted = [r for r in records if r.transaction_ref is not None]
        unreferenced = [r for r in records if r.transaction_ref is None]
        for record in submitted + unreferenced:
            report.record(self.reconcile_record(record))
        return report

    def reconcile_record(self, record: RewardRecord) -> ReconcileDecision:
        if record.is_terminal():
            return ReconcileDecision(record_id=record.id, decision=Decision.SKIPPED_TERMINAL,
                                     transaction_ref=record.transaction_ref)
        try:
            if record.transaction_ref is not None:
                return self._check_submitted(record)
            return self._check_pending(record)
        except LedgerUnavailableError as e:
            logger.warning("reward %s: ledger unavailable, will retry next pass: %s", record.id, e)
            return ReconcileDecision(record_id=record.id, decision=Decision.UNREACHABLE,
                                     transaction_ref=record.transaction_ref, note=str(e))

    def _check_submitted(self, record: RewardRecord) -> ReconcileDecision:
        ref = record.transaction_ref
        transfer = self.ledger.get_by_reference(ref)

        if transfer is None:
            started = record.submitted_at or record.created_at
            if self.clock() - started < self.grace_period:
                return self._decided(record, Decision.AWAITING_CONFIRMATION, ref)
            note = f"transaction {ref} not found on ledger after {self.grace_period}"
            return self._transition(record, RewardStatus.FAILED, Decision.FAILED, ref, note=note)

        if not transfer.confirmed:
            return self._decided(record, Decision.AWAITING_CONFIRMATION, ref)

        if transfer.recipient_address != record.recipient_address or Decimal(transfer.amount) != Decimal(record.amount):
            note = (
                f"ledger transfer {ref} pays {transfer.amount} to {transfer.recipient_address}, "
                f"reward expects {record.amount} to {record.recipient_address}"
            )
            logger.warning("reward %s: %s", record.id, note)
            return self._transition(record, RewardStatus.ANOMALOUS, Decision.ANOMALOUS, ref, note=note)

        return self._transition(record, RewardStatus.COMPLETED, Decision.COMPLETED, ref)

    def _check_pending(self, record: RewardRecord) -> ReconcileDecision:
        found = self.ledger.find_by_identity(
            record.recipient_address,
            record.amount,
            record.source_reference,
            self.lookback_window,
        )
        candidates = {}
        for transfer in found:
            owner = self.store.get_by_reference(transfer.transaction_ref)
            if owner is not None and owner.id != record.id:
                continue
            candidates.setdefault(transfer.transaction_ref, transfer)

        if not candidates:
            return self._decided(record, Decision.LEFT_PENDING)

        refs = list(candidates)
        if len(refs) > 1:
            note = f"{len(refs)} ledger transfers match this reward: {', '.join(refs)}"
            logger.warning("reward %s: %s", record.id, note)
            return self._transition(
                record, RewardStatus.ANOMALOUS, Decision.ANOMALOUS, refs[0],
                note=note, candidate_refs=refs,
            )

        transfer = candidates[refs[0]]
        if not transfer.confirmed:
            # already broadcast; the reference check finishes it once confirmed
            logger.info("reward %s: adopted unconfirmed transfer %s", record.id, transfer.transaction_ref)
            return self._transition(
                record, RewardStatus.SUBMITTED, Decision.ADOPTED, transfer.transaction_ref,
                note="unconfirmed transfer found by identity lookback",
            )

        logger.info("reward %s: recovered orphaned transfer %s", record.id, transfer.transaction_ref)
        return self._transition(
            record, RewardStatus.COMPLETED, Decision.COMPLETED, transfer.transaction_ref,
            note="recovered by identity lookback",
        )

    def _transition(self, record, target, decision, ref, note=None, candidate_refs=None) -> ReconcileDecision:
        try:
            result = apply_transition(
                self.store,
                record,
                target,
                transaction_ref=ref,
                actor="reconciliation",
                now=self.clock(),
                note=note,
                candidate_refs=candidate_refs,
            )
        except DuplicateReferenceError as e:
            logger.warning("reward %s: %s; skipping", record.id, e)
            return self._decided(record, Decision.CONFLICT, ref, note=str(e))

        if result != UpdateResult.APPLIED:
            return self._decided(record, Decision.CONFLICT, ref, note=f"update {result.value}")
        return self._decided(record, decision, ref, note=note)

    @staticmethod
    def _decided(record, decision, ref=None, note=None) -> ReconcileDecision:
        return ReconcileDecision(record_id=record.id, decision=decision, transaction_ref=ref, note=note)
