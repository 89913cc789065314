import logging
from typing import Optional
from uuid import UUID

from .errors import DuplicateReferenceError, InvalidStateTransitionError, RewardNotFoundError
from .models import RepairOutcome, RepairResult, RewardRecord, RewardStatus, UpdateResult
from .state_machine import apply_transition

logger = logging.getLogger(__name__)


class ManualRepairTool:
    """Operator fixes for rewards whose settlement proof is known out of band.

    A supplied reference is attached without asking the ledger, but still
    through the guarded update and never onto a reference another reward owns.
    """

    def __init__(self, store):
        self.store = store

    def repair(self, record_id: UUID, transaction_ref: str, performed_by: Optional[str] = None) -> RepairResult:
        transaction_ref = transaction_ref.strip()
        if not transaction_ref:
            raise ValueError("transaction_ref must not be blank")

        record = self.store.get(record_id)
        if record is None:
            return RepairResult(
                outcome=RepairOutcome.NOT_FOUND,
                record_id=record_id,
                transaction_ref=transaction_ref,
                message=f"Reward {record_id} not found",
            )
        return self._complete(record, transaction_ref, performed_by)

    def repair_latest(
        self,
        transaction_ref: str,
        recipient_address: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> RepairResult:
        page = self.store.find(
            [RewardStatus.PENDING],
            limit=1,
            recipient_address=recipient_address,
            newest_first=True,
        )
        if not page.records:
            return RepairResult(
                outcome=RepairOutcome.NOT_FOUND,
                transaction_ref=transaction_ref,
                message="No recent pending reward found to fix",
            )
        return self.repair(page.records[0].id, transaction_ref, performed_by)

    def reopen(self, record_id: UUID, performed_by: Optional[str] = None) -> RepairResult:
        record = self.store.get(record_id)
        if record is None:
            raise RewardNotFoundError(f"Reward {record_id} not found")
        if record.status != RewardStatus.FAILED:
            raise InvalidStateTransitionError(
                f"Only failed rewards can be reopened, reward {record_id} is {record.status.value}"
            )
        for ref in record.candidate_refs:
            owner = self.store.get_by_reference(ref)
            if owner is not None and owner.id != record_id:
                raise InvalidStateTransitionError(
                    f"Reward {record_id} cannot be reopened: its transfer {ref} is attached to reward {owner.id}"
                )

        result = apply_transition(
            self.store, record, RewardStatus.PENDING,
            manual=True, actor=self._actor(performed_by),
            note=f"reopened by {performed_by or 'operator'}",
        )
        if result != UpdateResult.APPLIED:
            return self._after_conflict(record_id, None)
        return RepairResult(
            outcome=RepairOutcome.REOPENED,
            record_id=record_id,
            message=f"Reward {record_id} reopened for resubmission",
            record=self.store.get(record_id),
        )

    def _complete(self, record: RewardRecord, transaction_ref: str, performed_by: Optional[str]) -> RepairResult:
        if record.is_terminal():
            return RepairResult(
                outcome=RepairOutcome.ALREADY_TERMINAL,
                record_id=record.id,
                transaction_ref=transaction_ref,
                message=f"Reward {record.id} is already {record.status.value}",
                record=record,
            )

        owner = self.store.get_by_reference(transaction_ref)
        if owner is not None and owner.id != record.id:
            return self._duplicate(record.id, transaction_ref, owner.id)

        displaced = []
        if record.transaction_ref and record.transaction_ref != transaction_ref:
            displaced.append(record.transaction_ref)

        try:
            result = apply_transition(
                self.store, record, RewardStatus.COMPLETED,
                transaction_ref=transaction_ref,
                actor=self._actor(performed_by),
                note=f"manual repair by {performed_by or 'operator'}",
                candidate_refs=displaced,
            )
        except DuplicateReferenceError as e:
            return self._duplicate(record.id, transaction_ref, e.owner_id)

        if result == UpdateResult.NOT_FOUND:
            return RepairResult(outcome=RepairOutcome.NOT_FOUND, record_id=record.id,
                                transaction_ref=transaction_ref, message=f"Reward {record.id} not found")
        if result == UpdateResult.GUARD_FAILED:
            return self._after_conflict(record.id, transaction_ref)

        logger.info("reward %s: manually completed with %s", record.id, transaction_ref)
        return RepairResult(
            outcome=RepairOutcome.FIXED,
            record_id=record.id,
            transaction_ref=transaction_ref,
            message=f"Reward {record.id} marked completed with transaction {transaction_ref}",
            record=self.store.get(record.id),
        )

    def _after_conflict(self, record_id: UUID, transaction_ref: Optional[str]) -> RepairResult:
        current = self.store.get(record_id)
        if current is not None and current.is_terminal():
            return RepairResult(
                outcome=RepairOutcome.ALREADY_TERMINAL,
                record_id=record_id,
                transaction_ref=transaction_ref,
                message=f"Reward {record_id} became {current.status.value} while repairing",
                record=current,
            )
        return RepairResult(
            outcome=RepairOutcome.CONFLICT,
            record_id=record_id,
            transaction_ref=transaction_ref,
            message=f"Reward {record_id} changed while repairing; re-check and retry",
            record=current,
        )

    @staticmethod
    def _duplicate(record_id: UUID, transaction_ref: str, owner_id) -> RepairResult:
        logger.warning("reward %s: refusing %s, already attached to reward %s", record_id, transaction_ref, owner_id)
        return RepairResult(
            outcome=RepairOutcome.DUPLICATE_REFERENCE,
            record_id=record_id,
            transaction_ref=transaction_ref,
            message=f"Transaction {transaction_ref} is already attached to reward {owner_id}",
        )

    @staticmethod
    def _actor(performed_by: Optional[str]) -> str:
        return f"manual-repair:{performed_by}" if performed_by else "manual-repair"
