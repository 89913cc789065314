from typing import Optional
from uuid import UUID
from fastapi import FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from .errors import (
    IdempotencyConflictError,
    InvalidStateTransitionError,
    RewardNotFoundError,
)
from .models import (
    CreateRewardRequest,
    RecordPage,
    ReconciliationReport,
    RepairOutcome,
    RepairResult,
    RewardRecord,
    RewardStatus,
    RewardStatusSummary,
    RewardsNeedingFix,
    SettlementCycleReport,
    StatusChange,
)
from .service import RewardService


class RepairRequest(BaseModel):
    record_id: UUID
    transaction_ref: str = Field(..., min_length=1)
    performed_by: Optional[str] = None


class RepairLatestRequest(BaseModel):
    transaction_ref: str = Field(..., min_length=1)
    recipient_address: Optional[str] = None
    performed_by: Optional[str] = None


class ReopenRequest(BaseModel):
    performed_by: Optional[str] = None


REPAIR_STATUS_CODES = {
    RepairOutcome.FIXED: status.HTTP_200_OK,
    RepairOutcome.REOPENED: status.HTTP_200_OK,
    RepairOutcome.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RepairOutcome.ALREADY_TERMINAL: status.HTTP_409_CONFLICT,
    RepairOutcome.DUPLICATE_REFERENCE: status.HTTP_409_CONFLICT,
    RepairOutcome.CONFLICT: status.HTTP_409_CONFLICT,
}


def create_app(service: Optional[RewardService] = None, root_path: str = "") -> FastAPI:
    reward_service = service or RewardService()

    app = FastAPI(
        title="Reward Settlement API",
        description="Token reward issuance with ledger reconciliation and operator repair",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "reward-settlement"}

    @app.post("/rewards", response_model=RewardRecord, status_code=status.HTTP_201_CREATED, tags=["Rewards"])
    def create_reward(request: CreateRewardRequest, response: Response) -> RewardRecord:
        try:
            record, created = reward_service.create_reward(request)
        except IdempotencyConflictError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
        if not created:
            response.status_code = status.HTTP_200_OK
        return record

    @app.get("/rewards", response_model=RecordPage, tags=["Rewards"])
    def list_rewards(
        status_filter: Optional[list[RewardStatus]] = Query(None, alias="status"),
        limit: int = Query(50, ge=1, le=500),
        cursor: Optional[str] = None,
        recipient_address: Optional[str] = None,
    ) -> RecordPage:
        return reward_service.list_rewards(status_filter, limit, cursor, recipient_address)

    @app.get("/rewards/summary", response_model=RewardStatusSummary, tags=["Rewards"])
    def rewards_summary() -> RewardStatusSummary:
        return reward_service.status_summary()

    @app.get("/rewards/needing-fix", response_model=RewardsNeedingFix, tags=["Repairs"])
    def rewards_needing_fix() -> RewardsNeedingFix:
        return reward_service.find_rewards_needing_fix()

    @app.get("/rewards/{reward_id}", response_model=RewardRecord, tags=["Rewards"])
    def get_reward(reward_id: UUID) -> RewardRecord:
        try:
            return reward_service.get_reward(reward_id)
        except RewardNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Reward {reward_id} not found")

    @app.get("/rewards/{reward_id}/history", response_model=list[StatusChange], tags=["Rewards"])
    def get_reward_history(reward_id: UUID) -> list[StatusChange]:
        try:
            return reward_service.get_history(reward_id)
        except RewardNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Reward {reward_id} not found")

    @app.post("/rewards/{reward_id}/reopen", response_model=RepairResult, tags=["Repairs"])
    def reopen_reward(reward_id: UUID, request: ReopenRequest) -> RepairResult:
        try:
            return reward_service.repair_tool.reopen(reward_id, request.performed_by)
        except RewardNotFoundError:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Reward {reward_id} not found")
        except InvalidStateTransitionError as e:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    @app.post("/settlement/run", response_model=SettlementCycleReport, tags=["Settlement"])
    def run_settlement() -> SettlementCycleReport:
        return reward_service.worker.run_cycle()

    @app.post("/reconciliation/run", response_model=ReconciliationReport, tags=["Settlement"])
    def run_reconciliation() -> ReconciliationReport:
        return reward_service.engine.run(batch_size=reward_service.settings.batch_size)

    @app.post("/repairs", response_model=RepairResult, tags=["Repairs"])
    def repair_reward(request: RepairRequest, response: Response) -> RepairResult:
        try:
            result = reward_service.repair_tool.repair(request.record_id, request.transaction_ref, request.performed_by)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
        response.status_code = REPAIR_STATUS_CODES[result.outcome]
        return result

    @app.post("/repairs/latest", response_model=RepairResult, tags=["Repairs"])
    def repair_latest_reward(request: RepairLatestRequest, response: Response) -> RepairResult:
        try:
            result = reward_service.repair_tool.repair_latest(
                request.transaction_ref, request.recipient_address, request.performed_by
            )
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
        response.status_code = REPAIR_STATUS_CODES[result.outcome]
        return result

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
