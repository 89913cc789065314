"""
Ledger access for reward settlement.

The distributed ledger is an external collaborator; only three calls are used:

- ``submit(recipient, amount, memo)`` returns a transaction reference or raises
  ``LedgerRejectedError`` (definite failure) / ``LedgerUnavailableError``
  (outcome unknown, the transfer may or may not have landed)
- ``get_by_reference(ref)`` returns the transfer or ``None``
- ``find_by_identity(recipient, amount, source_reference, window)`` returns the
  transfers carrying the reward's memo, confirmed or not, oldest first
"""

import logging
import secrets
import threading
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Protocol

import httpx

from .errors import LedgerRejectedError, LedgerUnavailableError
from .models import LedgerTransfer

logger = logging.getLogger(__name__)

DEFAULT_MEMO_PREFIX = "reward:"


def memo_for(source_reference: str, prefix: str = DEFAULT_MEMO_PREFIX) -> str:
    return f"{prefix}{source_reference}"


class LedgerClient(Protocol):
    def submit(self, recipient: str, amount: Decimal, memo: str) -> str: ...

    def get_by_reference(self, transaction_ref: str) -> Optional[LedgerTransfer]: ...

    def find_by_identity(
        self,
        recipient: str,
        amount: Decimal,
        source_reference: str,
        window: timedelta,
    ) -> list[LedgerTransfer]: ...


class InMemoryLedger:
    """Ledger kept in memory, for tests and local sandboxes.

    ``reject_next``/``timeout_next``/``drop_response_next`` script the next
    submissions: rejected outright, lost before reaching the ledger, or
    applied on the ledger with the response lost on the way back.
    """

    def __init__(self, memo_prefix: str = DEFAULT_MEMO_PREFIX, auto_confirm: bool = True):
        self.memo_prefix = memo_prefix
        self.auto_confirm = auto_confirm
        self.transfers: dict[str, LedgerTransfer] = {}
        self.submissions: list[str] = []
        self.reject_next = 0
        self.timeout_next = 0
        self.drop_response_next = 0
        self.unavailable = False
        self._lock = threading.Lock()

    def submit(self, recipient: str, amount: Decimal, memo: str) -> str:
        with self._lock:
            if self.unavailable:
                raise LedgerUnavailableError("ledger unreachable")
            if self.reject_next:
                self.reject_next -= 1
                raise LedgerRejectedError(f"transfer to {recipient} refused")
            if self.timeout_next:
                self.timeout_next -= 1
                raise LedgerUnavailableError("timed out before broadcast")
            transfer = self._record(recipient, amount, memo, self.auto_confirm)
            self.submissions.append(transfer.transaction_ref)
            if self.drop_response_next:
                self.drop_response_next -= 1
                raise LedgerUnavailableError("timed out after broadcast")
            return transfer.transaction_ref

    def add_transfer(
        self,
        recipient: str,
        amount: Decimal,
        memo: Optional[str] = None,
        confirmed: bool = True,
        created_at: Optional[datetime] = None,
    ) -> str:
        with self._lock:
            return self._record(recipient, amount, memo, confirmed, created_at).transaction_ref

    def confirm(self, transaction_ref: str) -> None:
        with self._lock:
            transfer = self.transfers[transaction_ref]
            self.transfers[transaction_ref] = transfer.model_copy(update={"confirmed": True})

    def get_by_reference(self, transaction_ref: str) -> Optional[LedgerTransfer]:
        if self.unavailable:
            raise LedgerUnavailableError("ledger unreachable")
        return self.transfers.get(transaction_ref)

    def find_by_identity(
        self,
        recipient: str,
        amount: Decimal,
        source_reference: str,
        window: timedelta,
    ) -> list[LedgerTransfer]:
        if self.unavailable:
            raise LedgerUnavailableError("ledger unreachable")
        since = datetime.now(timezone.utc) - window
        memo = memo_for(source_reference, self.memo_prefix)
        matches = [
            t for t in self.transfers.values()
            if t.recipient_address == recipient
            and Decimal(t.amount) == Decimal(amount)
            and t.memo == memo
            and t.created_at >= since
        ]
        matches.sort(key=lambda t: t.created_at)
        return matches

    def _record(self, recipient, amount, memo, confirmed, created_at=None) -> LedgerTransfer:
        transfer = LedgerTransfer(
            transaction_ref=secrets.token_hex(32),
            recipient_address=recipient,
            amount=Decimal(amount),
            memo=memo,
            confirmed=confirmed,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self.transfers[transfer.transaction_ref] = transfer
        return transfer


class HttpLedgerClient:
    """Ledger gateway over HTTP.

    Every call is bounded by ``timeout``. Timeouts, transport errors and 5xx
    answers mean the outcome is unknown and surface as
    ``LedgerUnavailableError``; 4xx answers to a submission are rejections.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        asset_code: str = "AURA",
        memo_prefix: str = DEFAULT_MEMO_PREFIX,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.asset_code = asset_code
        self.memo_prefix = memo_prefix
        self.client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def submit(self, recipient: str, amount: Decimal, memo: str) -> str:
        response = self._request("POST", "/transfers", json={
            "recipient": recipient,
            "amount": str(amount),
            "asset": self.asset_code,
            "memo": memo,
        })
        if response.status_code in (200, 201):
            try:
                ref = response.json()["transaction_ref"]
            except (ValueError, KeyError, TypeError):
                ref = None
            if not ref:
                # accepted, but no usable reference came back
                logger.warning("ledger accepted transfer without a readable reference: %s", response.text)
                raise LedgerUnavailableError(f"ledger answered {response.status_code} without transaction_ref")
            return str(ref)
        if 400 <= response.status_code < 500:
            raise LedgerRejectedError(self._detail(response))
        raise LedgerUnavailableError(f"ledger answered {response.status_code}: {self._detail(response)}")

    def get_by_reference(self, transaction_ref: str) -> Optional[LedgerTransfer]:
        response = self._request("GET", f"/transfers/{transaction_ref}")
        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise LedgerUnavailableError(f"ledger answered {response.status_code}: {self._detail(response)}")
        return self._transfer(response.json())

    def find_by_identity(
        self,
        recipient: str,
        amount: Decimal,
        source_reference: str,
        window: timedelta,
    ) -> list[LedgerTransfer]:
        since = datetime.now(timezone.utc) - window
        response = self._request("GET", "/transfers", params={
            "recipient": recipient,
            "amount": str(amount),
            "asset": self.asset_code,
            "memo": memo_for(source_reference, self.memo_prefix),
            "since": since.isoformat(),
        })
        if response.status_code != 200:
            raise LedgerUnavailableError(f"ledger answered {response.status_code}: {self._detail(response)}")
        transfers = [self._transfer(item) for item in response.json().get("transfers", [])]
        matches = [t for t in transfers if t.recipient_address == recipient and t.amount == Decimal(amount)]
        matches.sort(key=lambda t: t.created_at or since)
        return matches

    def close(self) -> None:
        self.client.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("ledger %s %s timed out", method, path)
            raise LedgerUnavailableError(f"ledger call timed out: {e}") from e
        except httpx.RequestError as e:
            logger.warning("ledger %s %s failed: %s", method, path, e)
            raise LedgerUnavailableError(f"ledger unreachable: {e}") from e

    @staticmethod
    def _transfer(data: dict) -> LedgerTransfer:
        return LedgerTransfer(
            transaction_ref=data["transaction_ref"],
            recipient_address=data["recipient"],
            amount=Decimal(str(data["amount"])),
            memo=data.get("memo"),
            confirmed=data.get("confirmed", True),
            created_at=data.get("created_at"),
        )

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            return str(response.json().get("detail", response.text))
        except ValueError:
            return response.text
