"""
Reward Settlement

This module provides:
- Reward lifecycle: pending → submitted → completed / anomalous / failed
- Guarded (compare-and-swap) status updates against the record store
- Reconciliation of pending and submitted rewards against the ledger,
  including recovery of transfers the store never heard about
- A settlement worker that submits without double paying on unknown outcomes
- Manual repair for operators holding out-of-band settlement proof
"""

from .models import (
    RewardStatus,
    RewardRecord,
    CreateRewardRequest,
    UpdateResult,
    RepairOutcome,
)
from .reconciliation import ReconciliationEngine
from .repair import ManualRepairTool
from .service import RewardService
from .worker import SettlementWorker

__all__ = [
    "RewardStatus",
    "RewardRecord",
    "CreateRewardRequest",
    "UpdateResult",
    "RepairOutcome",
    "ReconciliationEngine",
    "ManualRepairTool",
    "RewardService",
    "SettlementWorker",
]
