"""
Tests for the operator HTTP API.

Tests cover:
1. Reward intake and lookup
2. Settlement and reconciliation runs
3. Repair endpoints and their status codes
"""

from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from settlement.api import create_app
from settlement.config import Settings
from settlement.models import RewardStatus
from settlement.service import RewardService
from settlement.state_machine import apply_transition

from conftest import RECIPIENT


@pytest.fixture
def client(store, ledger):
    service = RewardService(store=store, ledger=ledger, settings=Settings())
    return TestClient(create_app(service))


def reward_payload(source="book:7:finished", amount="10"):
    return {"recipient_address": RECIPIENT, "amount": amount, "source_reference": source}


class TestRewardEndpoints:
    """Tests for reward intake and queries."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_create_and_fetch_reward(self, client):
        created = client.post("/rewards", json=reward_payload())
        assert created.status_code == 201
        reward_id = created.json()["id"]

        fetched = client.get(f"/rewards/{reward_id}")

        assert fetched.status_code == 200
        assert fetched.json()["status"] == "pending"
        assert fetched.json()["transaction_ref"] is None

    def test_repeat_create_is_idempotent(self, client):
        first = client.post("/rewards", json=reward_payload())
        second = client.post("/rewards", json=reward_payload())

        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]

    def test_conflicting_create(self, client):
        client.post("/rewards", json=reward_payload(amount="10"))

        response = client.post("/rewards", json=reward_payload(amount="99"))

        assert response.status_code == 409

    def test_invalid_reward_rejected(self, client):
        response = client.post("/rewards", json={**reward_payload(), "amount": "-1"})

        assert response.status_code == 422
        assert client.get("/rewards").json()["records"] == []

    def test_unknown_reward(self, client):
        response = client.get("/rewards/00000000-0000-0000-0000-000000000000")

        assert response.status_code == 404

    def test_list_by_status(self, client, store):
        first = client.post("/rewards", json=reward_payload(source="book:1")).json()
        client.post("/rewards", json=reward_payload(source="book:2"))
        apply_transition(store, store.get(UUID(first["id"])), RewardStatus.FAILED)

        response = client.get("/rewards", params={"status": ["failed"]})

        assert response.status_code == 200
        assert [r["id"] for r in response.json()["records"]] == [first["id"]]


class TestSettlementEndpoints:
    """Tests for the worker and reconciliation triggers."""

    def test_settlement_run_completes_reward(self, client):
        reward_id = client.post("/rewards", json=reward_payload()).json()["id"]

        report = client.post("/settlement/run").json()

        assert report["submitted"] == 1
        assert report["reconciliation"]["completed"] == 1
        reward = client.get(f"/rewards/{reward_id}").json()
        assert reward["status"] == "completed"
        assert reward["processed_at"] is not None

        history = client.get(f"/rewards/{reward_id}/history").json()
        assert [h["to_status"] for h in history] == ["submitted", "completed"]

    def test_reconciliation_run_recovers_orphan(self, client, ledger):
        reward = client.post("/rewards", json=reward_payload()).json()
        ref = ledger.submit(RECIPIENT, reward["amount"], f"reward:{reward['source_reference']}")

        report = client.post("/reconciliation/run").json()

        assert report["completed"] == 1
        assert client.get(f"/rewards/{reward['id']}").json()["transaction_ref"] == ref

    def test_summary_and_needing_fix(self, client):
        client.post("/rewards", json=reward_payload())

        summary = client.get("/rewards/summary").json()
        needing_fix = client.get("/rewards/needing-fix").json()

        assert summary["total"] == 1
        assert summary["by_status"]["pending"] == 1
        assert needing_fix["total"] == 1


class TestRepairEndpoints:
    """Tests for operator repairs."""

    def test_repair_fixes_reward(self, client):
        reward_id = client.post("/rewards", json=reward_payload()).json()["id"]

        response = client.post("/repairs", json={"record_id": reward_id, "transaction_ref": "tx-proof"})

        assert response.status_code == 200
        assert response.json()["outcome"] == "fixed"
        assert client.get(f"/rewards/{reward_id}").json()["status"] == "completed"

    def test_repair_duplicate_reference(self, client):
        first = client.post("/rewards", json=reward_payload(source="book:1")).json()["id"]
        second = client.post("/rewards", json=reward_payload(source="book:2")).json()["id"]
        client.post("/repairs", json={"record_id": first, "transaction_ref": "tx-proof"})

        response = client.post("/repairs", json={"record_id": second, "transaction_ref": "tx-proof"})

        assert response.status_code == 409
        assert response.json()["outcome"] == "duplicate_reference"

    def test_repair_unknown_reward(self, client):
        response = client.post("/repairs", json={
            "record_id": "00000000-0000-0000-0000-000000000000",
            "transaction_ref": "tx-proof",
        })

        assert response.status_code == 404
        assert response.json()["outcome"] == "not_found"

    def test_repair_latest(self, client):
        reward_id = client.post("/rewards", json=reward_payload()).json()["id"]

        response = client.post("/repairs/latest", json={"transaction_ref": "tx-proof"})

        assert response.status_code == 200
        assert response.json()["record_id"] == reward_id

    def test_reopen_failed_reward(self, client, ledger):
        ledger.reject_next = 1
        reward_id = client.post("/rewards", json=reward_payload()).json()["id"]
        client.post("/settlement/run")
        assert client.get(f"/rewards/{reward_id}").json()["status"] == "failed"

        response = client.post(f"/rewards/{reward_id}/reopen", json={"performed_by": "ops"})

        assert response.status_code == 200
        assert response.json()["outcome"] == "reopened"
        assert client.get(f"/rewards/{reward_id}").json()["status"] == "pending"

    def test_reopen_pending_reward_conflicts(self, client):
        reward_id = client.post("/rewards", json=reward_payload()).json()["id"]

        response = client.post(f"/rewards/{reward_id}/reopen", json={})

        assert response.status_code == 409


class TestAppConstruction:
    """Tests for how apps and their services are built."""

    def test_import_builds_no_app(self):
        import settlement.api

        assert not hasattr(settlement.api, "app")

    def test_each_app_uses_the_service_it_is_given(self, store, ledger):
        service = RewardService(store=store, ledger=ledger, settings=Settings())
        client = TestClient(create_app(service, root_path="/api"))

        created = client.post("/rewards", json=reward_payload()).json()

        assert store.get(UUID(created["id"])) is not None
