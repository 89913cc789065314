from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator


STELLAR_ADDRESS_PATTERN = r"^G[A-Z2-7]{55}$"


class RewardStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    FAILED = "failed"
    ANOMALOUS = "anomalous"


class UpdateResult(str, Enum):
    APPLIED = "applied"
    GUARD_FAILED = "guard_failed"
    NOT_FOUND = "not_found"


class SubmissionOutcome(str, Enum):
    SUBMITTED = "submitted"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


class Decision(str, Enum):
    COMPLETED = "completed"
    ADOPTED = "adopted"
    ANOMALOUS = "anomalous"
    FAILED = "failed"
    LEFT_PENDING = "left_pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFLICT = "conflict"
    SKIPPED_TERMINAL = "skipped_terminal"
    UNREACHABLE = "unreachable"


class RepairOutcome(str, Enum):
    FIXED = "fixed"
    ALREADY_TERMINAL = "already_terminal"
    DUPLICATE_REFERENCE = "duplicate_reference"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    REOPENED = "reopened"


class CreateRewardRequest(BaseModel):
    recipient_address: str = Field(..., pattern=STELLAR_ADDRESS_PATTERN, description="Ledger account receiving the reward")
    amount: Decimal = Field(..., gt=0, decimal_places=7)
    source_reference: str = Field(..., min_length=1, max_length=128, description="Triggering event, e.g. book milestone")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "recipient_address": "GBRPYHIL2CI3FNQ4BXLFMNDLFJUNPU2HY3ZMFSHONUCEOASW7QC7OX2H",
            "amount": 10,
            "source_reference": "book:9780261103573:finished",
        }
    })

    @field_validator("source_reference")
    @classmethod
    def strip_reference(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("source_reference must not be blank")
        return value


class RewardRecord(BaseModel):
    id: UUID
    recipient_address: str
    amount: Decimal
    source_reference: str
    status: RewardStatus
    transaction_ref: Optional[str] = None
    created_at: datetime
    submitted_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
    candidate_refs: list[str] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)

    def is_terminal(self) -> bool:
        return self.status in (RewardStatus.COMPLETED, RewardStatus.FAILED, RewardStatus.ANOMALOUS)


class StatusChange(BaseModel):
    record_id: UUID
    from_status: RewardStatus
    to_status: RewardStatus
    transaction_ref: Optional[str] = None
    actor: str
    note: Optional[str] = None
    changed_at: datetime


class RecordPage(BaseModel):
    records: list[RewardRecord]
    next_cursor: Optional[str] = None


class LedgerTransfer(BaseModel):
    transaction_ref: str
    recipient_address: str
    amount: Decimal
    memo: Optional[str] = None
    confirmed: bool = True
    created_at: Optional[datetime] = None


class ReconcileDecision(BaseModel):
    record_id: UUID
    decision: Decision
    transaction_ref: Optional[str] = None
    note: Optional[str] = None


class ReconciliationReport(BaseModel):
    examined: int = 0
    completed: int = 0
    adopted: int = 0
    anomalous: int = 0
    failed: int = 0
    left_pending: int = 0
    awaiting_confirmation: int = 0
    conflicts: int = 0
    skipped_terminal: int = 0
    unreachable: int = 0
    decisions: list[ReconcileDecision] = Field(default_factory=list)

    def record(self, decision: ReconcileDecision) -> None:
        self.examined += 1
        field_name = {
            Decision.COMPLETED: "completed",
            Decision.ADOPTED: "adopted",
            Decision.ANOMALOUS: "anomalous",
            Decision.FAILED: "failed",
            Decision.LEFT_PENDING: "left_pending",
            Decision.AWAITING_CONFIRMATION: "awaiting_confirmation",
            Decision.CONFLICT: "conflicts",
            Decision.SKIPPED_TERMINAL: "skipped_terminal",
            Decision.UNREACHABLE: "unreachable",
        }[decision.decision]
        setattr(self, field_name, getattr(self, field_name) + 1)
        self.decisions.append(decision)

    def merge(self, other: "ReconciliationReport") -> None:
        for decision in other.decisions:
            self.record(decision)

    @property
    def transitions(self) -> int:
        return self.completed + self.adopted + self.anomalous + self.failed


class SettlementCycleReport(BaseModel):
    total_processed: int = 0
    recovered: int = 0
    submitted: int = 0
    rejected: int = 0
    unknown: int = 0
    conflicts: int = 0
    total_amount_submitted: Decimal = Decimal("0")
    reconciliation: ReconciliationReport = Field(default_factory=ReconciliationReport)


class RepairResult(BaseModel):
    outcome: RepairOutcome
    record_id: Optional[UUID] = None
    transaction_ref: Optional[str] = None
    message: str
    record: Optional[RewardRecord] = None


class RewardStatusSummary(BaseModel):
    total: int
    by_status: dict[RewardStatus, int]
    with_transaction_ref: int
    completed_amount: Decimal


class RewardsNeedingFix(BaseModel):
    pending_without_reference: list[RewardRecord]
    anomalous: list[RewardRecord]
    failed: list[RewardRecord]
    total: int
