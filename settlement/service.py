import logging
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from .config import Settings, get_settings
from .errors import IdempotencyConflictError, RewardNotFoundError
from .ledger_client import HttpLedgerClient, InMemoryLedger
from .models import (
    CreateRewardRequest,
    RecordPage,
    RewardRecord,
    RewardStatus,
    RewardStatusSummary,
    RewardsNeedingFix,
    StatusChange,
)
from .reconciliation import ReconciliationEngine
from .repair import ManualRepairTool
from .store import InMemoryRecordStore, new_record
from .worker import SettlementWorker

logger = logging.getLogger(__name__)


def build_ledger(settings: Settings):
    if settings.ledger_base_url:
        return HttpLedgerClient(
            settings.ledger_base_url,
            timeout=settings.ledger_timeout_seconds,
            asset_code=settings.asset_code,
            memo_prefix=settings.memo_prefix,
        )
    logger.info("no ledger gateway configured, using in-memory sandbox ledger")
    return InMemoryLedger(memo_prefix=settings.memo_prefix)


class RewardService:
    def __init__(self, store=None, ledger=None, settings: Optional[Settings] = None, clock=None):
        self.settings = settings or get_settings()
        self.store = store or InMemoryRecordStore()
        self.ledger = ledger or build_ledger(self.settings)
        self.engine = ReconciliationEngine(
            self.store,
            self.ledger,
            grace_period=self.settings.grace_period,
            lookback_window=self.settings.lookback_window,
            clock=clock,
        )
        self.worker = SettlementWorker(
            self.store,
            self.ledger,
            engine=self.engine,
            batch_size=self.settings.batch_size,
            memo_prefix=self.settings.memo_prefix,
            backoff_base=self.settings.backoff_base_seconds,
            backoff_max=self.settings.backoff_max_seconds,
        )
        self.repair_tool = ManualRepairTool(self.store)

    def create_reward(self, request: CreateRewardRequest) -> tuple[RewardRecord, bool]:
        """Record a new pending reward.

        Returns the record and whether it was created; a repeat of an earlier
        request for the same recipient and source returns the existing record.
        """
        for existing in self.store.find_by_source(request.recipient_address, request.source_reference):
            if existing.status == RewardStatus.FAILED:
                continue
            if Decimal(existing.amount) != request.amount:
                raise IdempotencyConflictError(
                    f"Reward for {request.source_reference} already exists with amount {existing.amount}"
                )
            return existing, False

        record = self.store.create(new_record(request.recipient_address, request.amount, request.source_reference))
        logger.info("reward %s: created pending %s for %s", record.id, record.amount, record.recipient_address)
        return record, True

    def get_reward(self, reward_id: UUID) -> RewardRecord:
        record = self.store.get(reward_id)
        if record is None:
            raise RewardNotFoundError(f"Reward {reward_id} not found")
        return record

    def get_history(self, reward_id: UUID) -> list[StatusChange]:
        self.get_reward(reward_id)
        return self.store.history(reward_id)

    def list_rewards(
        self,
        statuses: Optional[Iterable[RewardStatus]] = None,
        limit: int = 50,
        cursor: Optional[str] = None,
        recipient_address: Optional[str] = None,
    ) -> RecordPage:
        return self.store.find(
            list(statuses) if statuses else list(RewardStatus),
            limit=limit,
            cursor=cursor,
            recipient_address=recipient_address,
        )

    def status_summary(self) -> RewardStatusSummary:
        by_status = {status: 0 for status in RewardStatus}
        with_ref = 0
        completed_amount = Decimal("0")
        for record in self._scan(list(RewardStatus)):
            by_status[record.status] += 1
            if record.transaction_ref:
                with_ref += 1
            if record.status == RewardStatus.COMPLETED:
                completed_amount += Decimal(record.amount)
        return RewardStatusSummary(
            total=sum(by_status.values()),
            by_status=by_status,
            with_transaction_ref=with_ref,
            completed_amount=completed_amount,
        )

    def find_rewards_needing_fix(self) -> RewardsNeedingFix:
        pending = [r for r in self._scan([RewardStatus.PENDING], newest_first=True) if r.transaction_ref is None]
        anomalous = list(self._scan([RewardStatus.ANOMALOUS], newest_first=True))
        failed = list(self._scan([RewardStatus.FAILED], newest_first=True))
        return RewardsNeedingFix(
            pending_without_reference=pending,
            anomalous=anomalous,
            failed=failed,
            total=len(pending) + len(anomalous) + len(failed),
        )

    def _scan(self, statuses, newest_first: bool = False):
        cursor = None
        while True:
            page = self.store.find(statuses, limit=self.settings.batch_size, cursor=cursor, newest_first=newest_first)
            yield from page.records
            cursor = page.next_cursor
            if cursor is None:
                return
