"""
Tests for the manual repair tool.

Tests cover:
1. Attaching a known transaction reference
2. Terminal records and unknown records
3. Duplicate reference rejection
4. Fixing the latest pending reward
5. Reopening failed rewards
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from settlement.errors import InvalidStateTransitionError, RewardNotFoundError
from settlement.models import RepairOutcome, RewardStatus
from settlement.repair import ManualRepairTool
from settlement.state_machine import apply_transition

from conftest import OTHER_RECIPIENT, RECIPIENT, T0


class TestRepairByRecord:
    """Tests for repairing a specific reward."""

    def test_pending_reward_fixed(self, store, make_record):
        record = make_record()
        tool = ManualRepairTool(store)

        result = tool.repair(record.id, " tx-proof ", performed_by="ops@example.com")

        assert result.outcome == RepairOutcome.FIXED
        assert result.record.status == RewardStatus.COMPLETED
        assert result.record.transaction_ref == "tx-proof"
        assert result.record.processed_at is not None
        assert "ops@example.com" in result.record.resolution_note
        assert store.history(record.id)[0].actor == "manual-repair:ops@example.com"

    def test_submitted_reward_keeps_displaced_reference(self, store, make_record):
        record = make_record()
        apply_transition(store, record, RewardStatus.SUBMITTED, transaction_ref="tx-old")

        result = ManualRepairTool(store).repair(record.id, "tx-new")

        assert result.outcome == RepairOutcome.FIXED
        assert result.record.transaction_ref == "tx-new"
        assert result.record.candidate_refs == ["tx-old"]
        assert store.get_by_reference("tx-old") is None

    def test_completed_reward_is_already_terminal(self, store, make_record):
        record = make_record()
        apply_transition(store, record, RewardStatus.COMPLETED, transaction_ref="tx-1")

        result = ManualRepairTool(store).repair(record.id, "tx-2")

        assert result.outcome == RepairOutcome.ALREADY_TERMINAL
        assert store.get(record.id).transaction_ref == "tx-1"

    def test_failed_reward_must_be_reopened_first(self, store, make_record):
        record = make_record()
        apply_transition(store, record, RewardStatus.FAILED)

        result = ManualRepairTool(store).repair(record.id, "tx-2")

        assert result.outcome == RepairOutcome.ALREADY_TERMINAL

    def test_unknown_reward(self, store):
        result = ManualRepairTool(store).repair(uuid4(), "tx-1")

        assert result.outcome == RepairOutcome.NOT_FOUND

    def test_reference_owned_by_another_reward_rejected(self, store, make_record):
        owner = make_record()
        other = make_record()
        apply_transition(store, owner, RewardStatus.COMPLETED, transaction_ref="tx-taken")

        result = ManualRepairTool(store).repair(other.id, "tx-taken")

        assert result.outcome == RepairOutcome.DUPLICATE_REFERENCE
        assert str(owner.id) in result.message
        assert store.get(other.id).status == RewardStatus.PENDING

    def test_reference_of_failed_reward_may_be_reused(self, store, make_record):
        old = make_record()
        new = make_record()
        apply_transition(store, old, RewardStatus.SUBMITTED, transaction_ref="tx-1")
        apply_transition(store, store.get(old.id), RewardStatus.FAILED)

        result = ManualRepairTool(store).repair(new.id, "tx-1")

        assert result.outcome == RepairOutcome.FIXED

    def test_blank_reference_rejected(self, store, make_record):
        record = make_record()

        with pytest.raises(ValueError):
            ManualRepairTool(store).repair(record.id, "   ")


class TestRepairLatest:
    """Tests for fixing the most recent pending reward."""

    def test_latest_pending_reward_fixed(self, store, make_record):
        make_record(now=T0)
        latest = make_record(now=T0 + timedelta(minutes=3))

        result = ManualRepairTool(store).repair_latest("tx-latest")

        assert result.outcome == RepairOutcome.FIXED
        assert result.record_id == latest.id

    def test_latest_scoped_to_recipient(self, store, make_record):
        mine = make_record(now=T0, recipient=RECIPIENT)
        make_record(now=T0 + timedelta(minutes=3), recipient=OTHER_RECIPIENT)

        result = ManualRepairTool(store).repair_latest("tx-latest", recipient_address=RECIPIENT)

        assert result.record_id == mine.id

    def test_no_pending_reward(self, store):
        result = ManualRepairTool(store).repair_latest("tx-latest")

        assert result.outcome == RepairOutcome.NOT_FOUND


class TestReopen:
    """Tests for sending failed rewards back to pending."""

    def test_failed_reward_reopened(self, store, make_record):
        record = make_record()
        apply_transition(store, record, RewardStatus.SUBMITTED, transaction_ref="tx-1")
        apply_transition(store, store.get(record.id), RewardStatus.FAILED)

        result = ManualRepairTool(store).reopen(record.id, performed_by="ops@example.com")

        current = store.get(record.id)
        assert result.outcome == RepairOutcome.REOPENED
        assert current.status == RewardStatus.PENDING
        assert current.transaction_ref is None
        assert current.processed_at is None
        assert current.candidate_refs == ["tx-1"]

    def test_completed_reward_cannot_be_reopened(self, store, make_record):
        record = make_record()
        apply_transition(store, record, RewardStatus.COMPLETED, transaction_ref="tx-1")

        with pytest.raises(InvalidStateTransitionError):
            ManualRepairTool(store).reopen(record.id)

    def test_reopen_unknown_reward(self, store):
        with pytest.raises(RewardNotFoundError):
            ManualRepairTool(store).reopen(uuid4())
