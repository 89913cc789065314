import threading
from datetime import datetime, timezone
from typing import Iterable, Optional, Protocol
from uuid import UUID, uuid4

from .errors import DuplicateReferenceError, ImmutableFieldError, SettlementError
from .models import RecordPage, RewardRecord, RewardStatus, StatusChange, UpdateResult
from .state_machine import reference_consistent

IMMUTABLE_FIELDS = frozenset({"id", "recipient_address", "amount", "source_reference", "created_at"})
MUTABLE_FIELDS = frozenset({
    "status",
    "transaction_ref",
    "submitted_at",
    "processed_at",
    "resolution_note",
    "candidate_refs",
})


class RecordStore(Protocol):
    def create(self, record: RewardRecord) -> RewardRecord: ...

    def get(self, record_id: UUID) -> Optional[RewardRecord]: ...

    def get_by_reference(self, transaction_ref: str) -> Optional[RewardRecord]: ...

    def find(
        self,
        statuses: Iterable[RewardStatus],
        limit: int = 50,
        cursor: Optional[str] = None,
        recipient_address: Optional[str] = None,
        newest_first: bool = False,
    ) -> RecordPage: ...

    def find_by_source(self, recipient_address: str, source_reference: str) -> list[RewardRecord]: ...

    def update(self, record_id: UUID, expected_status: RewardStatus, changes: dict, actor: str = "system") -> UpdateResult: ...

    def history(self, record_id: UUID) -> list[StatusChange]: ...


def new_record(recipient_address: str, amount, source_reference: str, now: Optional[datetime] = None) -> RewardRecord:
    return RewardRecord(
        id=uuid4(),
        recipient_address=recipient_address,
        amount=amount,
        source_reference=source_reference,
        status=RewardStatus.PENDING,
        created_at=now or datetime.now(timezone.utc),
    )


class InMemoryRecordStore:
    """Record store kept in process memory.

    Updates are compare-and-swap on the current status under a single lock,
    which is what a database would give with
    ``UPDATE ... WHERE id = :id AND status = :expected``. Transaction
    references are unique across every record that is not ``failed``.
    Records are never deleted.
    """

    def __init__(self):
        self.reward_records: dict[UUID, dict] = {}
        self.reference_index: dict[str, UUID] = {}
        self.status_changes: dict[UUID, list[dict]] = {}
        self._lock = threading.RLock()

    def create(self, record: RewardRecord) -> RewardRecord:
        if record.status != RewardStatus.PENDING or record.transaction_ref is not None:
            raise SettlementError("New rewards must start pending without a transaction reference")
        with self._lock:
            if record.id in self.reward_records:
                raise SettlementError(f"Reward {record.id} already exists")
            self.reward_records[record.id] = record.model_dump()
            self.status_changes[record.id] = []
        return RewardRecord(**self.reward_records[record.id])

    def get(self, record_id: UUID) -> Optional[RewardRecord]:
        with self._lock:
            data = self.reward_records.get(record_id)
            return RewardRecord(**data) if data else None

    def get_by_reference(self, transaction_ref: str) -> Optional[RewardRecord]:
        with self._lock:
            owner_id = self.reference_index.get(transaction_ref)
            if owner_id is None:
                return None
            return RewardRecord(**self.reward_records[owner_id])

    def find(
        self,
        statuses: Iterable[RewardStatus],
        limit: int = 50,
        cursor: Optional[str] = None,
        recipient_address: Optional[str] = None,
        newest_first: bool = False,
    ) -> RecordPage:
        wanted = set(statuses)
        with self._lock:
            rows = sorted(
                self.reward_records.values(),
                key=lambda r: (r["created_at"], str(r["id"])),
                reverse=newest_first,
            )
            if cursor is not None:
                anchor = self.reward_records.get(UUID(cursor))
                if anchor is None:
                    raise SettlementError(f"Unknown cursor {cursor}")
                anchor_key = (anchor["created_at"], str(anchor["id"]))
                if newest_first:
                    rows = [r for r in rows if (r["created_at"], str(r["id"])) < anchor_key]
                else:
                    rows = [r for r in rows if (r["created_at"], str(r["id"])) > anchor_key]
            matched = [
                r for r in rows
                if r["status"] in wanted
                and (recipient_address is None or r["recipient_address"] == recipient_address)
            ]
            page = [RewardRecord(**r) for r in matched[:limit]]

        next_cursor = str(page[-1].id) if len(matched) > limit else None
        return RecordPage(records=page, next_cursor=next_cursor)

    def find_by_source(self, recipient_address: str, source_reference: str) -> list[RewardRecord]:
        with self._lock:
            return [
                RewardRecord(**r) for r in self.reward_records.values()
                if r["recipient_address"] == recipient_address and r["source_reference"] == source_reference
            ]

    def update(self, record_id: UUID, expected_status: RewardStatus, changes: dict, actor: str = "system") -> UpdateResult:
        touched_immutable = IMMUTABLE_FIELDS.intersection(changes)
        if touched_immutable:
            raise ImmutableFieldError(f"Fields {sorted(touched_immutable)} cannot change after creation")
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise SettlementError(f"Unknown reward fields {sorted(unknown)}")

        with self._lock:
            current = self.reward_records.get(record_id)
            if current is None:
                return UpdateResult.NOT_FOUND
            if current["status"] != expected_status:
                return UpdateResult.GUARD_FAILED

            updated = RewardRecord(**{**current, **changes})
            if not reference_consistent(updated.status, updated.transaction_ref):
                raise SettlementError(
                    f"Reward {record_id} cannot be {updated.status.value} with transaction_ref={updated.transaction_ref}"
                )
            new_ref = updated.transaction_ref
            if new_ref is not None and updated.status != RewardStatus.FAILED:
                owner = self.reference_index.get(new_ref)
                if owner is not None and owner != record_id:
                    raise DuplicateReferenceError(new_ref, owner)

            old_ref = current["transaction_ref"]
            if old_ref is not None and self.reference_index.get(old_ref) == record_id:
                del self.reference_index[old_ref]
            if new_ref is not None and updated.status != RewardStatus.FAILED:
                self.reference_index[new_ref] = record_id

            self.reward_records[record_id] = updated.model_dump()
            if updated.status != current["status"]:
                self.status_changes[record_id].append({
                    "record_id": record_id,
                    "from_status": current["status"],
                    "to_status": updated.status,
                    "transaction_ref": new_ref,
                    "actor": actor,
                    "note": updated.resolution_note,
                    "changed_at": datetime.now(timezone.utc),
                })
        return UpdateResult.APPLIED

    def history(self, record_id: UUID) -> list[StatusChange]:
        with self._lock:
            return [StatusChange(**c) for c in self.status_changes.get(record_id, [])]

    def all_records(self) -> list[RewardRecord]:
        with self._lock:
            return [RewardRecord(**r) for r in self.reward_records.values()]
