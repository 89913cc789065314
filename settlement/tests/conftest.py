from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from settlement.ledger_client import InMemoryLedger, memo_for
from settlement.reconciliation import ReconciliationEngine
from settlement.store import InMemoryRecordStore, new_record


RECIPIENT = "GBRPYHIL2CI3FNQ4BXLFMNDLFJUNPU2HY3ZMFSHONUCEOASW7QC7OX2H"
OTHER_RECIPIENT = "GCEZWKCA5VLDNRLN3RPRJMRZOX3Z6G5CHCGSNFHEYVXM3XOJMDS674JZ"
T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return InMemoryRecordStore()


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def engine(store, ledger):
    return ReconciliationEngine(store, ledger)


@pytest.fixture
def make_record(store):
    counter = iter(range(10_000))

    def _make(amount="10", source=None, recipient=RECIPIENT, now=None):
        n = next(counter)
        record = new_record(
            recipient,
            Decimal(amount),
            source or f"book:{n}:finished",
            now=now or datetime.now(timezone.utc) + timedelta(microseconds=n),
        )
        return store.create(record)

    return _make


@pytest.fixture
def broadcast(ledger):
    """Put a transfer on the ledger for a record without telling the store."""

    def _broadcast(record, amount=None, recipient=None):
        return ledger.submit(
            recipient or record.recipient_address,
            Decimal(amount) if amount is not None else record.amount,
            memo_for(record.source_reference, ledger.memo_prefix),
        )

    return _broadcast
