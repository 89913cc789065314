import logging
import threading
from decimal import Decimal
from typing import Optional

from tenacity import RetryCallState, Retrying, retry_if_result, wait_exponential

from .errors import DuplicateReferenceError, LedgerRejectedError, LedgerUnavailableError
from .ledger_client import DEFAULT_MEMO_PREFIX, memo_for
from .models import (
    Decision,
    RewardRecord,
    RewardStatus,
    SettlementCycleReport,
    SubmissionOutcome,
    UpdateResult,
)
from .reconciliation import ReconciliationEngine
from .state_machine import apply_transition

logger = logging.getLogger(__name__)


def cycle_unsettled(report: SettlementCycleReport) -> bool:
    """A cycle is unsettled while the ledger left some outcome unknown."""
    return bool(report.unknown or report.reconciliation.unreachable)


class SettlementWorker:
    """Moves pending rewards onto the ledger.

    Before anything is submitted the batch goes through identity
    reconciliation, so a reward whose earlier transfer landed without the
    store hearing about it is linked instead of paid twice. An unknown
    submission outcome leaves the record pending for the next pass to find.
    Every cycle ends with a reference check over all submitted records.
    """

    def __init__(
        self,
        store,
        ledger,
        engine: Optional[ReconciliationEngine] = None,
        batch_size: int = 50,
        memo_prefix: str = DEFAULT_MEMO_PREFIX,
        backoff_base: float = 2.0,
        backoff_max: float = 300.0,
    ):
        self.store = store
        self.ledger = ledger
        self.engine = engine or ReconciliationEngine(store, ledger)
        self.batch_size = batch_size
        self.memo_prefix = memo_prefix
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    def run_cycle(self) -> SettlementCycleReport:
        report = SettlementCycleReport()
        batch = self.store.find([RewardStatus.PENDING], limit=self.batch_size).records
        report.total_processed = len(batch)

        if batch:
            precheck = self.engine.reconcile(batch)
            report.reconciliation.merge(precheck)
            report.recovered = precheck.completed + precheck.adopted
            still_pending = {d.record_id for d in precheck.decisions if d.decision == Decision.LEFT_PENDING}

            for record in batch:
                if record.id not in still_pending:
                    continue
                outcome, current = self.submit_record(record)
                if outcome == SubmissionOutcome.SUBMITTED:
                    report.submitted += 1
                    report.total_amount_submitted += Decimal(record.amount)
                    if current is None:
                        report.conflicts += 1
                elif outcome == SubmissionOutcome.REJECTED:
                    report.rejected += 1
                elif current is None:
                    report.conflicts += 1
                else:
                    report.unknown += 1

        # includes records submitted in earlier cycles that confirmed since
        report.reconciliation.merge(self.engine.run(batch_size=self.batch_size, statuses=[RewardStatus.SUBMITTED]))

        logger.info(
            "settlement cycle: processed=%d recovered=%d submitted=%d rejected=%d unknown=%d conflicts=%d amount=%s",
            report.total_processed, report.recovered, report.submitted, report.rejected,
            report.unknown, report.conflicts, report.total_amount_submitted,
        )
        return report

    def submit_record(self, record: RewardRecord) -> tuple[SubmissionOutcome, Optional[RewardRecord]]:
        """Submit one pending record.

        Returns the outcome and the re-read record; the record is ``None`` when
        it could not be moved on as the outcome implies, because another actor
        advanced it first or the ledger answered with a reference another
        reward already holds.
        """
        if record.status != RewardStatus.PENDING or record.transaction_ref is not None:
            logger.warning("reward %s: already processed, not submitting", record.id)
            return SubmissionOutcome.UNKNOWN, None

        memo = memo_for(record.source_reference, self.memo_prefix)
        try:
            ref = self.ledger.submit(record.recipient_address, record.amount, memo)
        except LedgerRejectedError as e:
            result = apply_transition(
                self.store, record, RewardStatus.FAILED,
                actor="settlement-worker", note=f"ledger rejected transfer: {e}",
            )
            if result != UpdateResult.APPLIED:
                return SubmissionOutcome.REJECTED, None
            return SubmissionOutcome.REJECTED, self.store.get(record.id)
        except LedgerUnavailableError as e:
            logger.warning("reward %s: submission outcome unknown, leaving pending: %s", record.id, e)
            return SubmissionOutcome.UNKNOWN, record

        try:
            result = apply_transition(
                self.store, record, RewardStatus.SUBMITTED,
                transaction_ref=ref, actor="settlement-worker",
            )
        except DuplicateReferenceError as e:
            self._park_duplicate(record, ref, e.owner_id)
            return SubmissionOutcome.SUBMITTED, None

        if result != UpdateResult.APPLIED:
            logger.warning("reward %s: submitted as %s but record was advanced by another actor", record.id, ref)
            return SubmissionOutcome.SUBMITTED, None
        return SubmissionOutcome.SUBMITTED, self.store.get(record.id)

    def _park_duplicate(self, record: RewardRecord, ref: str, owner_id) -> None:
        # The reference cannot be held twice, so the record is closed with the
        # reference kept as evidence; reopen refuses it while the owner holds it.
        logger.error(
            "reward %s: ledger accepted the transfer but returned reference %s, already attached to reward %s",
            record.id, ref, owner_id,
        )
        result = apply_transition(
            self.store, record, RewardStatus.FAILED,
            actor="settlement-worker", candidate_refs=[ref],
            note=f"ledger accepted transfer with reference {ref}, already attached to reward {owner_id}; needs review",
        )
        if result != UpdateResult.APPLIED:
            logger.warning("reward %s: advanced by another actor, %s left unattached", record.id, ref)

    def run_until_settled(self, stop_event: threading.Event) -> SettlementCycleReport:
        """Run cycles until one leaves no outcome unknown, backing off exponentially in between."""
        retrying = Retrying(
            retry=retry_if_result(cycle_unsettled),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            stop=lambda retry_state: stop_event.is_set(),
            sleep=stop_event.wait,
            before_sleep=self._log_backoff,
            retry_error_callback=lambda retry_state: retry_state.outcome.result(),
        )
        return retrying(self.run_cycle)

    def run_forever(self, stop_event: threading.Event, interval: float = 60.0) -> None:
        while not stop_event.is_set():
            self.run_until_settled(stop_event)
            if not stop_event.is_set():
                stop_event.wait(interval)

    @staticmethod
    def _log_backoff(retry_state: RetryCallState) -> None:
        logger.warning(
            "ledger outcome unknown for %d cycle(s), backing off %.1fs",
            retry_state.attempt_number, retry_state.next_action.sleep,
        )
